"""
DCA Engine - Mock Exchange Gateway.

============================================================
PURPOSE
============================================================
In-memory spot exchange for tests and EXCHANGE=mock dry runs.

FEATURES:
- Resting GTC limit orders with deterministic IDs
- Manual fills, partial fills, cancels and expiry
- Free-balance bookkeeping per asset
- Error injection per operation
- Call log for asserting request ordering

Orders never fill on their own; tests (or a price walk in a
dry run) drive fills explicitly.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple

from ..types import OrderSide, OrderStatus, ExchangeError, utc_now
from ..errors import is_retryable
from .base import ExchangeGateway, ExchangeOrder


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for the mock gateway."""

    initial_balances: Dict[str, Decimal] = field(default_factory=lambda: {
        "USDT": Decimal("1000"),
    })
    """Free balance per asset at start."""

    default_price: Decimal = Decimal("50000.0")
    """Price for symbols without an explicit set_price()."""

    first_order_id: int = 1001
    """Exchange IDs are assigned sequentially from here."""

    fill_at_or_better: bool = False
    """Fill resting orders automatically when set_price() crosses them."""

    is_testnet: bool = True


# ============================================================
# MOCK ORDER
# ============================================================

@dataclass
class MockOrder:
    """Mock order state."""

    order_id: str
    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal

    status: OrderStatus = OrderStatus.NEW
    executed_quantity: Decimal = Decimal("0")
    cumulative_quote: Decimal = Decimal("0")
    placed_at: Any = field(default_factory=utc_now)
    updated_at: Any = field(default_factory=utc_now)

    def snapshot(self) -> ExchangeOrder:
        executed_price = None
        if self.executed_quantity > 0:
            executed_price = self.cumulative_quote / self.executed_quantity

        if self.cumulative_quote > 0:
            quote_quantity = self.cumulative_quote
        elif self.status.is_active():
            quote_quantity = self.price * self.quantity
        else:
            quote_quantity = Decimal("0")

        return ExchangeOrder(
            exchange_order_id=self.order_id,
            symbol=self.symbol,
            side=self.side,
            status=self.status,
            price=self.price,
            quantity=self.quantity,
            executed_quantity=self.executed_quantity,
            executed_price=executed_price,
            quote_quantity=quote_quantity,
            placed_at=self.placed_at,
            updated_at=self.updated_at,
        )


# ============================================================
# MOCK EXCHANGE GATEWAY
# ============================================================

class MockExchangeGateway(ExchangeGateway):
    """
    Mock spot exchange gateway.

    Simulates:
    - Limit order placement and status queries
    - Fills driven by the test
    - Balance management
    - Error injection
    """

    def __init__(self, config: Optional[MockConfig] = None):
        """
        Initialize mock gateway.

        Args:
            config: Mock configuration
        """
        self._config = config or MockConfig()
        self._connected = False

        self._balances: Dict[str, Decimal] = dict(self._config.initial_balances)
        self._orders: Dict[str, MockOrder] = {}
        self._prices: Dict[str, Decimal] = {}
        self._next_order_id = self._config.first_order_id

        # operation -> [error code, remaining count or None for persistent]
        self._injected_errors: Dict[str, List[Any]] = {}

        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        """Every gateway call as (operation, args), in order."""

    @property
    def exchange_id(self) -> str:
        return "mock"

    @property
    def is_testnet(self) -> bool:
        return self._config.is_testnet

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        self._connected = True
        logger.info("MockExchangeGateway connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("MockExchangeGateway disconnected")

    # --------------------------------------------------------
    # MARKET / ACCOUNT
    # --------------------------------------------------------

    async def get_current_price(self, symbol: str) -> Decimal:
        self._enter("get_current_price", symbol)
        return self._get_price(symbol)

    async def get_account_balance(self, asset: str) -> Decimal:
        self._enter("get_account_balance", asset)
        return self._balances.get(asset, Decimal("0"))

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
    ) -> ExchangeOrder:
        self._enter("place_limit_order", symbol, side, price, quantity)

        if price <= 0 or quantity <= 0:
            raise ExchangeError(
                f"Invalid price {price} or quantity {quantity}",
                code="VAL_INVALID_QUANTITY",
            )

        base_asset, quote_asset = self._split_symbol(symbol)
        if side == OrderSide.BUY:
            self._debit(quote_asset, price * quantity)
        else:
            self._debit(base_asset, quantity)

        order_id = str(self._next_order_id)
        self._next_order_id += 1

        order = MockOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
        )
        self._orders[order_id] = order

        logger.debug(f"Mock order {order_id} placed: {side.value} {quantity} {symbol} @ {price}")
        return order.snapshot()

    async def get_order_status(self, symbol: str, exchange_order_id: str) -> ExchangeOrder:
        self._enter("get_order_status", symbol, exchange_order_id)
        return self._get_order(exchange_order_id).snapshot()

    async def cancel_order(self, symbol: str, exchange_order_id: str) -> None:
        self._enter("cancel_order", symbol, exchange_order_id)
        order = self._get_order(exchange_order_id)
        if order.status.is_terminal():
            raise ExchangeError(
                f"Order {exchange_order_id} is {order.status.value}",
                code="EXC_CANCEL_REJECTED",
            )
        self._close(order, OrderStatus.CANCELED)

    async def list_open_orders(self, symbol: str) -> List[ExchangeOrder]:
        self._enter("list_open_orders", symbol)
        return [
            order.snapshot()
            for order in self._orders.values()
            if order.symbol == symbol and order.status.is_active()
        ]

    # --------------------------------------------------------
    # TEST CONTROLS
    # --------------------------------------------------------

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Set the market price; may cross resting orders."""
        self._prices[symbol] = price
        if not self._config.fill_at_or_better:
            return
        for order in list(self._orders.values()):
            if order.symbol != symbol or order.status.is_terminal():
                continue
            crossed = (
                (order.side == OrderSide.BUY and price <= order.price)
                or (order.side == OrderSide.SELL and price >= order.price)
            )
            if crossed:
                self.fill_order(order.order_id)

    def set_balance(self, asset: str, amount: Decimal) -> None:
        self._balances[asset] = amount

    def fill_order(self, order_id: str, price: Optional[Decimal] = None) -> ExchangeOrder:
        """
        Fully fill an order.

        Args:
            order_id: Exchange order ID
            price: Execution price for the remaining quantity
                (defaults to the limit price)
        """
        order = self._get_order(order_id)
        remaining = order.quantity - order.executed_quantity
        self._execute(order, remaining, price or order.price)
        return order.snapshot()

    def partially_fill_order(
        self,
        order_id: str,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> ExchangeOrder:
        """Execute part of an order, leaving it PARTIALLY_FILLED."""
        order = self._get_order(order_id)
        remaining = order.quantity - order.executed_quantity
        if quantity <= 0 or quantity >= remaining:
            raise ValueError(f"partial fill quantity must be in (0, {remaining})")
        self._execute(order, quantity, price or order.price)
        return order.snapshot()

    def set_order_status(self, order_id: str, status: OrderStatus) -> ExchangeOrder:
        """Force an order into a status (CANCELED, EXPIRED, REJECTED, ...)."""
        order = self._get_order(order_id)
        if status == OrderStatus.FILLED:
            return self.fill_order(order_id)
        if status.is_terminal() and order.status.is_active():
            self._close(order, status)
        else:
            order.status = status
            order.updated_at = utc_now()
        return order.snapshot()

    def add_external_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
    ) -> str:
        """Create a resting order the bot did not place."""
        order_id = str(self._next_order_id)
        self._next_order_id += 1
        self._orders[order_id] = MockOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
        )
        return order_id

    def inject_error(
        self,
        operation: str,
        code: str = "NET_CONNECTION_FAILED",
        times: Optional[int] = 1,
    ) -> None:
        """
        Make an operation raise ExchangeError.

        Args:
            operation: Gateway method name (e.g. "place_limit_order")
            code: Internal error code to raise
            times: Number of failing calls, None for every call
        """
        self._injected_errors[operation] = [code, times]

    def clear_errors(self) -> None:
        self._injected_errors.clear()

    def get_order(self, order_id: str) -> MockOrder:
        return self._get_order(order_id)

    def orders(self, side: Optional[OrderSide] = None) -> List[MockOrder]:
        """All orders ever placed, in placement order."""
        return [o for o in self._orders.values() if side is None or o.side == side]

    def count_calls(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))

        injected = self._injected_errors.get(operation)
        if injected is None:
            return

        code, remaining = injected
        if remaining is not None:
            remaining -= 1
            if remaining <= 0:
                del self._injected_errors[operation]
            else:
                injected[1] = remaining

        raise ExchangeError(
            f"Injected error: {code}",
            code=code,
            is_retryable=is_retryable(code),
        )

    def _get_order(self, order_id: str) -> MockOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise ExchangeError(
                f"Order does not exist: {order_id}",
                code="EXC_ORDER_NOT_FOUND",
            )
        return order

    def _get_price(self, symbol: str) -> Decimal:
        return self._prices.get(symbol, self._config.default_price)

    def _split_symbol(self, symbol: str) -> Tuple[str, str]:
        for quote in ("USDT", "BUSD", "USDC", "BTC", "ETH"):
            if symbol.endswith(quote) and symbol != quote:
                return symbol[: -len(quote)], quote
        return symbol, ""

    def _debit(self, asset: str, amount: Decimal) -> None:
        available = self._balances.get(asset, Decimal("0"))
        if available < amount:
            raise ExchangeError(
                f"Account has insufficient balance for requested action "
                f"({asset}: {available} < {amount})",
                code="SUB_ORDER_REJECTED",
            )
        self._balances[asset] = available - amount

    def _credit(self, asset: str, amount: Decimal) -> None:
        self._balances[asset] = self._balances.get(asset, Decimal("0")) + amount

    def _execute(self, order: MockOrder, quantity: Decimal, price: Decimal) -> None:
        if order.status.is_terminal():
            raise ValueError(f"order {order.order_id} is already {order.status.value}")

        base_asset, quote_asset = self._split_symbol(order.symbol)

        order.executed_quantity += quantity
        order.cumulative_quote += quantity * price
        order.updated_at = utc_now()

        if order.side == OrderSide.BUY:
            # Reserved at limit price; refund any price improvement.
            self._credit(base_asset, quantity)
            self._credit(quote_asset, quantity * (order.price - price))
        else:
            self._credit(quote_asset, quantity * price)

        if order.executed_quantity >= order.quantity:
            order.status = OrderStatus.FILLED
        else:
            order.status = OrderStatus.PARTIALLY_FILLED

    def _close(self, order: MockOrder, status: OrderStatus) -> None:
        base_asset, quote_asset = self._split_symbol(order.symbol)
        remaining = order.quantity - order.executed_quantity

        if order.side == OrderSide.BUY:
            self._credit(quote_asset, remaining * order.price)
        else:
            self._credit(base_asset, remaining)

        order.status = status
        order.updated_at = utc_now()
