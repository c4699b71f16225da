"""
DCA Engine - Order/Trade State Machine.

============================================================
PURPOSE
============================================================
Keeps Order and Trade records the single source of truth
for what the bot believes happened.

ORDER STATUS (exchange authoritative):

    NEW ──► PARTIALLY_FILLED ──► FILLED
     │            │
     │            └──► CANCELED | EXPIRED | PENDING_CANCEL
     ├──► FILLED | CANCELED | REJECTED | EXPIRED
     └──► PENDING_CANCEL ──► CANCELED

TRADE STATUS:

    OPEN ──► SOLD      (sell order FILLED, profit frozen)
     └────► ERROR      (sell order died; manual follow-up)

INVARIANTS:
- Status updates are never rejected; backward moves are logged
- A trade carries at most one sell order
- Profit is computed exactly once, at the SOLD transition

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Set, Dict

from .types import (
    Order,
    OrderSide,
    OrderStatus,
    Trade,
    TradeStatus,
    PersistenceError,
    PlacementPersistenceError,
    AlreadyAttachedError,
    quantize_amount,
)
from .repository import TradingRepository
from .pricing import calculate_sell_price, calculate_profit
from .clock import Clock, SystemClock


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

# Forward transitions the exchange is expected to report
VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.NEW: {
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELED,
        OrderStatus.REJECTED,
        OrderStatus.EXPIRED,
        OrderStatus.PENDING_CANCEL,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.FILLED,
        OrderStatus.CANCELED,
        OrderStatus.EXPIRED,
        OrderStatus.PENDING_CANCEL,
    },
    OrderStatus.PENDING_CANCEL: {
        OrderStatus.CANCELED,
        OrderStatus.FILLED,
        OrderStatus.EXPIRED,
    },
    # Terminal
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELED: set(),
    OrderStatus.REJECTED: set(),
    OrderStatus.EXPIRED: set(),
}

EXECUTION_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED})
DEAD_STATUSES = frozenset({OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED})


def is_forward_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    """Whether the move follows the domain ordering."""
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, set())


# ============================================================
# LIFECYCLE STATE MACHINE
# ============================================================

class LifecycleStateMachine:
    """
    Order and trade transitions with persistence.

    Every method writes through the repository; store failures
    surface as PersistenceError (or PlacementPersistenceError).
    """

    def __init__(
        self,
        repository: TradingRepository,
        clock: Optional[Clock] = None,
        is_test: bool = False,
    ):
        """
        Initialize state machine.

        Args:
            repository: Persistence store
            clock: Time source
            is_test: Mark new orders as placed against a testnet
        """
        self._repository = repository
        self._clock = clock or SystemClock()
        self._is_test = is_test

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def record_placement(
        self,
        side: OrderSide,
        symbol: str,
        price: Decimal,
        quantity: Decimal,
        exchange_order_id: str,
        status: OrderStatus = OrderStatus.NEW,
        quote_quantity: Optional[Decimal] = None,
        placed_at: Optional[datetime] = None,
    ) -> Order:
        """
        Persist an order the exchange just accepted.

        Raises:
            PlacementPersistenceError: If the store write fails. The
                order exists on the exchange regardless.
        """
        now = self._clock.now()
        order = Order(
            exchange_order_id=exchange_order_id,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
            quote_quantity=quantize_amount(quote_quantity if quote_quantity is not None else price * quantity),
            status=status,
            is_test=self._is_test,
            placed_at=placed_at or now,
            executed_at=now if status in EXECUTION_STATUSES else None,
            last_updated_at=now,
        )

        try:
            await self._repository.create_order(order)
        except PersistenceError as e:
            logger.critical(
                f"CRITICAL: {side.value} order {exchange_order_id} placed on exchange "
                f"but failed to save to DB: {e}"
            )
            raise PlacementPersistenceError(order, e) from e

        logger.info(
            f"Recorded {side.value} order {exchange_order_id}: "
            f"{quantity} {symbol} @ {price} ({status.value})"
        )
        return order

    def transition(self, order: Order, new_status: OrderStatus) -> bool:
        """
        Apply a status change in memory.

        Returns:
            True if the order changed
        """
        if new_status == order.status:
            return False

        old_status = order.status
        if not is_forward_transition(old_status, new_status):
            logger.warning(
                f"Non-monotonic status update for order {order.exchange_order_id}: "
                f"{old_status.value} -> {new_status.value} (applying exchange status)"
            )

        now = self._clock.now()
        order.status = new_status
        if new_status in EXECUTION_STATUSES:
            order.executed_at = now
        elif new_status in DEAD_STATUSES:
            order.executed_at = None
        order.last_updated_at = now

        logger.info(
            f"Order {order.exchange_order_id} status {old_status.value} -> {new_status.value}"
        )
        return True

    async def apply_status_update(
        self,
        order: Order,
        new_status: OrderStatus,
        quote_quantity: Optional[Decimal] = None,
    ) -> Order:
        """
        Overwrite an order's status with the exchange's view.

        No-op when the status is unchanged. Never rejects.

        Raises:
            PersistenceError: If the update cannot be stored
        """
        if not self.transition(order, new_status):
            return order

        if quote_quantity is not None and quote_quantity > 0:
            order.quote_quantity = quantize_amount(quote_quantity)

        await self._repository.update_order_by_exchange_id(order)
        return order

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    async def open_trade(
        self,
        buy_order: Order,
        buy_price: Decimal,
        buy_quantity: Decimal,
        sell_profit_percentage: Decimal,
    ) -> Trade:
        """
        Open a trade for a filled buy order.

        Raises:
            PersistenceError: If the trade cannot be stored
        """
        now = self._clock.now()
        buy_price = quantize_amount(buy_price)
        trade = Trade(
            buy_order_id=buy_order.exchange_order_id,
            symbol=buy_order.symbol,
            buy_price=buy_price,
            buy_quantity=quantize_amount(buy_quantity),
            sell_price_target=calculate_sell_price(buy_price, sell_profit_percentage),
            opened_at=now,
            last_status_update=now,
        )
        await self._repository.create_trade(trade)

        logger.info(
            f"Opened trade {trade.id} for buy order {trade.buy_order_id}: "
            f"{trade.buy_quantity} @ {trade.buy_price}, target {trade.sell_price_target}"
        )
        return trade

    async def attach_sell(self, trade: Trade, sell_exchange_id: str) -> Trade:
        """
        Attach the trade's single sell order.

        Raises:
            AlreadyAttachedError: If a sell is already attached
            PersistenceError: If the update cannot be stored
        """
        if trade.sell_order_id is not None:
            raise AlreadyAttachedError(trade, sell_exchange_id)

        trade.sell_order_id = sell_exchange_id
        trade.last_status_update = self._clock.now()
        await self._repository.update_trade_by_id(trade)

        logger.info(f"Attached sell order {sell_exchange_id} to trade {trade.id}")
        return trade

    async def close_as_sold(self, trade: Trade, actual_sell_price: Decimal) -> Decimal:
        """
        Freeze profit and mark the trade SOLD.

        Idempotent: an already SOLD trade returns its stored profit.

        Raises:
            ValueError: If the trade is CANCELED or ERROR
            PersistenceError: If the update cannot be stored
        """
        if trade.status == TradeStatus.SOLD:
            return trade.profit if trade.profit is not None else Decimal("0")

        if trade.status != TradeStatus.OPEN:
            raise ValueError(f"trade {trade.id} is {trade.status.value}, cannot close as SOLD")

        now = self._clock.now()
        actual_sell_price = quantize_amount(actual_sell_price)
        profit = calculate_profit(trade.buy_price, actual_sell_price, trade.buy_quantity)

        trade.actual_sell_price = actual_sell_price
        trade.profit = profit
        trade.status = TradeStatus.SOLD
        trade.closed_at = now
        trade.last_status_update = now

        await self._repository.update_trade_by_id(trade)

        logger.info(
            f"Trade {trade.id} SOLD at {actual_sell_price} "
            f"(bought at {trade.buy_price}), profit {profit}"
        )
        return profit

    async def mark_error(self, trade: Trade, reason: str) -> Trade:
        """
        Move an OPEN trade to ERROR.

        No-op for trades already terminal.

        Raises:
            PersistenceError: If the update cannot be stored
        """
        if trade.status != TradeStatus.OPEN:
            return trade

        now = self._clock.now()
        trade.status = TradeStatus.ERROR
        trade.closed_at = now
        trade.last_status_update = now
        await self._repository.update_trade_by_id(trade)

        logger.error(f"Trade {trade.id} marked ERROR: {reason}")
        return trade
