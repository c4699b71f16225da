"""
DCA Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the DCA reconciliation engine.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for order status."
    "Local persistence is the system of record for what the
     bot itself must act on."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal, ROUND_HALF_UP


def utc_now() -> datetime:
    """Current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


AMOUNT_PLACES = Decimal("0.00000001")
"""Stored precision for prices, quantities and profits."""


def quantize_amount(value: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
    """Round a money or quantity value to stored precision."""
    return value.quantize(AMOUNT_PLACES, rounding=rounding)


# ============================================================
# ORDER TYPES
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(Enum):
    """
    Exchange order status.

    Status Domain:

        NEW
         │
         ├──► PARTIALLY_FILLED ──► FILLED
         │          │
         ├──► FILLED
         ├──► CANCELED
         ├──► REJECTED
         ├──► EXPIRED
         └──► PENDING_CANCEL ──► CANCELED

    FILLED, CANCELED, REJECTED and EXPIRED are terminal.
    """

    NEW = "NEW"
    """Accepted by the exchange, resting on the book."""

    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    """Some quantity executed."""

    PENDING_CANCEL = "PENDING_CANCEL"
    """Cancel requested, not yet confirmed."""

    FILLED = "FILLED"
    """Fully executed."""

    CANCELED = "CANCELED"
    """Canceled by user or exchange."""

    REJECTED = "REJECTED"
    """Rejected by the exchange."""

    EXPIRED = "EXPIRED"
    """Expired by the exchange."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal status."""
        return self in TERMINAL_ORDER_STATUSES

    def is_active(self) -> bool:
        """Check if the order may still execute."""
        return not self.is_terminal()

    @classmethod
    def from_exchange(cls, status: str) -> "OrderStatus":
        """
        Parse an exchange status string.

        Exchange-specific variants fold into the domain:
        EXPIRED_IN_MATCH (self-trade prevention) is EXPIRED,
        PENDING_NEW is NEW.

        Raises:
            ValueError: If the status is not part of the domain
        """
        normalized = status.strip().upper()
        return cls(EXCHANGE_STATUS_ALIASES.get(normalized, normalized))


EXCHANGE_STATUS_ALIASES = {
    "CANCELLED": "CANCELED",
    "EXPIRED_IN_MATCH": "EXPIRED",
    "PENDING_NEW": "NEW",
}


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})

ACTIVE_ORDER_STATUSES = frozenset({
    OrderStatus.NEW,
    OrderStatus.PARTIALLY_FILLED,
    OrderStatus.PENDING_CANCEL,
})

class TradeStatus(Enum):
    """
    Trade lifecycle status.

    OPEN ──► SOLD | CANCELED | ERROR (all terminal)
    """

    OPEN = "OPEN"
    """Buy filled, sell not yet filled."""

    SOLD = "SOLD"
    """Sell filled, profit realized."""

    CANCELED = "CANCELED"
    """Abandoned without a sell."""

    ERROR = "ERROR"
    """Unrecoverable inconsistency."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal status."""
        return self is not TradeStatus.OPEN


# ============================================================
# ORDER
# ============================================================

@dataclass
class Order:
    """
    One exchange order placed by the bot.

    Mutated only by re-reading authoritative status from the
    exchange. Never deleted.
    """

    exchange_order_id: str
    """Exchange-assigned order ID (unique, immutable)."""

    symbol: str
    side: OrderSide
    price: Decimal
    quantity: Decimal

    quote_quantity: Decimal = Decimal("0")
    """Quote-asset value of the order."""

    status: OrderStatus = OrderStatus.NEW

    is_test: bool = False
    """Placed against a test environment."""

    placed_at: datetime = field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    last_updated_at: datetime = field(default_factory=utc_now)

    id: Optional[int] = None
    """Local surrogate ID (assigned by the store)."""


# ============================================================
# TRADE
# ============================================================

@dataclass
class Trade:
    """
    Logical buy-then-sell position derived from one filled buy.
    """

    buy_order_id: str
    """Exchange ID of the filled buy order."""

    symbol: str
    buy_price: Decimal
    buy_quantity: Decimal
    sell_price_target: Decimal

    sell_order_id: Optional[str] = None
    """Exchange ID of the sell order (set at most once)."""

    actual_sell_price: Optional[Decimal] = None
    status: TradeStatus = TradeStatus.OPEN

    profit: Optional[Decimal] = None
    """Realized profit in quote-asset units, frozen at SOLD."""

    opened_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    last_status_update: datetime = field(default_factory=utc_now)

    id: Optional[int] = None
    """Local surrogate ID (assigned by the store)."""


# ============================================================
# BOT STATE
# ============================================================

BOT_STATE_ID = 1
"""The single BotState row always uses this ID."""


@dataclass
class BotState:
    """
    Single persistent row summarizing bot progress.

    quote_balance is a locally projected value: placements
    decrement it immediately, the next authoritative balance
    read corrects it. It may be stale by up to one cycle.
    """

    initial_capital: Decimal = Decimal("0")
    quote_balance: Decimal = Decimal("0")
    base_balance: Decimal = Decimal("0")
    total_invested: Decimal = Decimal("0")
    total_profit: Decimal = Decimal("0")
    initial_buy_orders_placed_count: int = 0
    last_initial_buy_order_placed_at: Optional[datetime] = None
    is_initial_buying_complete: bool = False
    last_cycle_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    id: int = BOT_STATE_ID
    persisted: bool = False
    """Whether the row already exists in the store."""

    @classmethod
    def initial(cls, initial_capital: Decimal) -> "BotState":
        """Fresh state for a first run."""
        return cls(
            initial_capital=initial_capital,
            quote_balance=initial_capital,
        )

    def update_balances(self, quote: Decimal, base: Decimal) -> None:
        """Apply an authoritative balance read."""
        self.quote_balance = quote
        self.base_balance = base
        self.updated_at = utc_now()

    def project_spend(self, amount: Decimal) -> None:
        """Optimistically debit the projected quote balance."""
        self.quote_balance -= amount
        self.total_invested += amount
        self.updated_at = utc_now()

    def record_initial_buy(self, at: datetime, target: int) -> None:
        """Count one initial buy; completes the phase at target."""
        self.initial_buy_orders_placed_count += 1
        self.last_initial_buy_order_placed_at = at
        if self.initial_buy_orders_placed_count >= target:
            self.is_initial_buying_complete = True
        self.updated_at = at

    def complete_initial_buying(self) -> None:
        """One-way: the initial phase never reopens."""
        self.is_initial_buying_complete = True
        self.updated_at = utc_now()

    def add_profit(self, profit: Decimal) -> None:
        self.total_profit += profit
        self.updated_at = utc_now()


# ============================================================
# EXCEPTIONS
# ============================================================

class DcaEngineError(Exception):
    """Base exception for the DCA engine."""
    pass


class ConfigurationError(DcaEngineError):
    """Missing or invalid settings. Fatal at startup only."""
    pass


class ExchangeError(DcaEngineError):
    """Exchange gateway error."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.is_retryable = is_retryable


class PersistenceError(DcaEngineError):
    """Store read or write failed."""
    pass


class PlacementPersistenceError(PersistenceError):
    """
    Order was placed on the exchange but could not be persisted.

    Critical inconsistency: the placement already happened
    externally and must be surfaced, never dropped.
    """

    def __init__(self, order: Order, cause: Exception):
        super().__init__(
            f"Order {order.exchange_order_id} ({order.side.value} {order.symbol}) "
            f"placed on exchange but not persisted: {cause}"
        )
        self.order = order
        self.cause = cause


class AlreadyAttachedError(DcaEngineError):
    """A sell order is already attached to the trade. Benign."""

    def __init__(self, trade: Trade, sell_order_id: str):
        super().__init__(
            f"Trade {trade.id} already has sell order {trade.sell_order_id}; "
            f"refusing to attach {sell_order_id}"
        )
        self.trade = trade
        self.sell_order_id = sell_order_id


class BotStatePersistenceError(PersistenceError):
    """BotState could not be saved at cycle end. Fatal."""
    pass
