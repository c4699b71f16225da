"""
DCA Engine - Exchange Gateway Base.

============================================================
PURPOSE
============================================================
Abstract interface for the spot exchange gateway.

DESIGN PRINCIPLES:
- Purely a translation layer, no strategy decisions
- Exchange-agnostic request/response types
- Fully testable with the mock gateway

All failures surface as ExchangeError; is_retryable tells
the engine whether the next cycle may succeed.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from ..types import OrderSide, OrderStatus, utc_now


logger = logging.getLogger(__name__)


# ============================================================
# RESPONSE TYPES
# ============================================================

@dataclass
class ExchangeOrder:
    """
    Authoritative view of one order as reported by the exchange.

    Returned by placement, status queries and open-order listings.
    """

    exchange_order_id: str
    symbol: str
    side: OrderSide
    status: OrderStatus

    price: Decimal
    """Limit price as accepted by the exchange (after rounding)."""

    quantity: Decimal
    """Original order quantity (after rounding)."""

    executed_quantity: Decimal = Decimal("0")

    executed_price: Optional[Decimal] = None
    """Average execution price; None until something executes."""

    quote_quantity: Decimal = Decimal("0")
    """Executed quote amount, or price x quantity while resting."""

    placed_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    raw_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def fill_price(self) -> Decimal:
        """Executed price, falling back to the limit price."""
        return self.executed_price if self.executed_price is not None else self.price

    @property
    def fill_quantity(self) -> Decimal:
        """Executed quantity, falling back to the order quantity."""
        return self.executed_quantity if self.executed_quantity > 0 else self.quantity


@dataclass
class SymbolRules:
    """Trading rules for a symbol (PRICE_FILTER / LOT_SIZE)."""

    symbol: str
    tick_size: Decimal
    step_size: Decimal
    min_quantity: Decimal = Decimal("0")
    base_asset: str = ""
    quote_asset: str = ""

    def round_price(self, price: Decimal) -> Decimal:
        """Round a price to the tick size."""
        return price.quantize(self.tick_size.normalize(), rounding=ROUND_HALF_UP)

    def round_quantity(self, quantity: Decimal) -> Decimal:
        """
        Round a quantity to the step size.

        Rounds down so a sell never exceeds the bought amount; a
        result below min_quantity is raised to min_quantity.
        """
        rounded = quantity.quantize(self.step_size.normalize(), rounding=ROUND_DOWN)
        if rounded < self.min_quantity:
            logger.warning(
                f"Calculated quantity {rounded} is less than minimum allowed "
                f"{self.min_quantity} for {self.symbol}. Adjusting to minimum."
            )
            rounded = self.min_quantity
        return rounded


# ============================================================
# EXCHANGE GATEWAY
# ============================================================

class ExchangeGateway(ABC):
    """
    Abstract base class for spot exchange gateways.
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Gateway identifier."""
        pass

    @property
    @abstractmethod
    def is_testnet(self) -> bool:
        """Whether orders go to a test environment."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "ExchangeGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # --------------------------------------------------------
    # MARKET / ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def get_current_price(self, symbol: str) -> Decimal:
        """Latest traded price for symbol."""
        pass

    @abstractmethod
    async def get_account_balance(self, asset: str) -> Decimal:
        """Available (free) balance of asset; 0 if absent."""
        pass

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        price: Decimal,
        quantity: Decimal,
    ) -> ExchangeOrder:
        """Place a GTC limit order."""
        pass

    @abstractmethod
    async def get_order_status(
        self,
        symbol: str,
        exchange_order_id: str,
    ) -> ExchangeOrder:
        """Fetch authoritative order status."""
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, exchange_order_id: str) -> None:
        pass

    @abstractmethod
    async def list_open_orders(self, symbol: str) -> List[ExchangeOrder]:
        """All orders currently resting for symbol."""
        pass
