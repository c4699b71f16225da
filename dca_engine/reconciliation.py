"""
DCA Engine - Reconciliation.

============================================================
PURPOSE
============================================================
Reconciles local orders and trades with exchange state.

RESPONSIBILITIES:
- Open a trade for every buy order observed FILLED
- Drive OPEN trades: attach the profit-target sell, close
  as SOLD once it fills
- Sweep open orders and sync local status
- Detect untracked orders (on exchange, unknown locally)

CRITICAL INVARIANT:
    "Exchange state is authoritative for order status."

Errors on one trade or order are logged and recorded; the
remaining items are still processed. Everything skipped is
retried on the next cycle.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from .types import (
    BotState,
    Order,
    OrderSide,
    OrderStatus,
    Trade,
    TradeStatus,
    ExchangeError,
    PersistenceError,
    PlacementPersistenceError,
    AlreadyAttachedError,
    ACTIVE_ORDER_STATUSES,
    utc_now,
)
from .config import StrategyConfig
from .pricing import calculate_sell_price
from .repository import TradingRepository
from .state_machine import LifecycleStateMachine, DEAD_STATUSES
from .adapters.base import ExchangeGateway, ExchangeOrder


logger = logging.getLogger(__name__)


# ============================================================
# RECONCILIATION TYPES
# ============================================================

class InconsistencyType(Enum):
    """Disagreements between the exchange and the store."""

    UNTRACKED_ORDER = "UNTRACKED_ORDER"
    """Open on the exchange, absent locally."""

    PLACEMENT_NOT_PERSISTED = "PLACEMENT_NOT_PERSISTED"
    """Placed on the exchange, store write failed."""

    SELL_ALREADY_ATTACHED = "SELL_ALREADY_ATTACHED"
    """Second sell attach attempted on a trade."""

    SELL_ORDER_DEAD = "SELL_ORDER_DEAD"
    """Attached sell order canceled, rejected or expired."""


@dataclass
class Inconsistency:
    """A detected inconsistency."""

    inconsistency_type: InconsistencyType
    order_id: Optional[str] = None
    trade_id: Optional[int] = None
    message: str = ""
    detected_at: datetime = field(default_factory=utc_now)


@dataclass
class ReconciliationResult:
    """Result of the reconciliation phases of one cycle."""

    trades_opened: int = 0
    sells_placed: int = 0
    trades_sold: int = 0
    trades_errored: int = 0
    profit_realized: Decimal = Decimal("0")

    orders_checked: int = 0
    """Orders whose exchange status was read."""

    orders_synced: int = 0
    """Orders whose local status changed."""

    inconsistencies: List[Inconsistency] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether every step completed."""
        return len(self.errors) == 0

    @property
    def untracked_orders(self) -> int:
        return sum(
            1 for i in self.inconsistencies
            if i.inconsistency_type == InconsistencyType.UNTRACKED_ORDER
        )


# ============================================================
# TRADE RECONCILER
# ============================================================

class TradeReconciler:
    """
    Sell-side reconciliation and the generic order sweep.
    """

    def __init__(
        self,
        config: StrategyConfig,
        gateway: ExchangeGateway,
        repository: TradingRepository,
        state_machine: LifecycleStateMachine,
    ):
        self._config = config
        self._gateway = gateway
        self._repository = repository
        self._state_machine = state_machine

    # --------------------------------------------------------
    # TRADE OPENING
    # --------------------------------------------------------

    async def open_trades_for_filled_buys(self, result: ReconciliationResult) -> None:
        """
        Open a trade for each buy order the exchange reports FILLED.

        Considers every local BUY order with no trade that is
        still active or FILLED. Buys that end CANCELED after a
        partial fill do not open a trade.

        Raises:
            PersistenceError: If the candidate list cannot be read
        """
        candidates = await self._repository.list_buy_orders_without_trade(
            statuses=ACTIVE_ORDER_STATUSES | {OrderStatus.FILLED},
        )

        for order in candidates:
            try:
                remote = await self._refresh(order, result)
                if remote.status != OrderStatus.FILLED:
                    continue

                await self._state_machine.open_trade(
                    buy_order=order,
                    buy_price=remote.fill_price,
                    buy_quantity=remote.fill_quantity,
                    sell_profit_percentage=self._config.sell_profit_percentage,
                )
                result.trades_opened += 1

            except ExchangeError as e:
                self._record_error(result, f"buy order {order.exchange_order_id} status check failed: {e}")
            except PersistenceError as e:
                self._record_error(result, f"could not open trade for buy order {order.exchange_order_id}: {e}")

    # --------------------------------------------------------
    # SELL-SIDE RECONCILIATION
    # --------------------------------------------------------

    async def reconcile_open_trades(self, state: BotState, result: ReconciliationResult) -> None:
        """
        Advance every OPEN trade by at most one step.

        Realized profit is folded into state exactly once.

        Raises:
            PersistenceError: If OPEN trades cannot be listed
        """
        trades = await self._repository.list_trades_by_status(TradeStatus.OPEN)
        if trades:
            logger.info(f"Checking {len(trades)} open trades")

        for trade in trades:
            try:
                await self._reconcile_trade(trade, state, result)
            except ExchangeError as e:
                self._record_error(result, f"trade {trade.id}: exchange error: {e}")
            except PersistenceError as e:
                self._record_error(result, f"trade {trade.id}: store error: {e}")

    async def _reconcile_trade(
        self,
        trade: Trade,
        state: BotState,
        result: ReconciliationResult,
    ) -> None:
        buy_remote = await self._gateway.get_order_status(trade.symbol, trade.buy_order_id)
        result.orders_checked += 1
        await self._sync_local(buy_remote, result)

        if buy_remote.status != OrderStatus.FILLED:
            logger.debug(
                f"Buy order {trade.buy_order_id} for trade {trade.id} is "
                f"{buy_remote.status.value}, skipping"
            )
            return

        if trade.sell_order_id is None:
            await self._place_sell(trade, result)
            return

        sell_remote = await self._gateway.get_order_status(trade.symbol, trade.sell_order_id)
        result.orders_checked += 1
        await self._sync_local(sell_remote, result)

        if sell_remote.status == OrderStatus.FILLED:
            was_open = trade.status == TradeStatus.OPEN
            profit = await self._state_machine.close_as_sold(trade, sell_remote.fill_price)
            if was_open:
                state.add_profit(profit)
                result.trades_sold += 1
                result.profit_realized += profit

        elif sell_remote.status in DEAD_STATUSES:
            reason = f"sell order {trade.sell_order_id} is {sell_remote.status.value}"
            await self._state_machine.mark_error(trade, reason)
            result.trades_errored += 1
            result.inconsistencies.append(Inconsistency(
                inconsistency_type=InconsistencyType.SELL_ORDER_DEAD,
                order_id=trade.sell_order_id,
                trade_id=trade.id,
                message=reason,
            ))

        else:
            logger.debug(
                f"Sell order {trade.sell_order_id} for trade {trade.id} is "
                f"{sell_remote.status.value}, waiting"
            )

    async def _place_sell(self, trade: Trade, result: ReconciliationResult) -> None:
        sell_price = calculate_sell_price(trade.buy_price, self._config.sell_profit_percentage)
        logger.info(
            f"Buy order {trade.buy_order_id} FILLED, placing sell for trade {trade.id}: "
            f"{trade.buy_quantity} @ {sell_price}"
        )

        try:
            placed = await self._gateway.place_limit_order(
                trade.symbol,
                OrderSide.SELL,
                sell_price,
                trade.buy_quantity,
            )
        except ExchangeError as e:
            self._record_error(
                result,
                f"failed to place sell order for trade {trade.id}, will retry next cycle: {e}",
            )
            return

        try:
            await self._state_machine.record_placement(
                side=OrderSide.SELL,
                symbol=trade.symbol,
                price=placed.price,
                quantity=placed.quantity,
                exchange_order_id=placed.exchange_order_id,
                status=placed.status,
                placed_at=placed.placed_at,
            )
        except PlacementPersistenceError as e:
            logger.warning(f"Attaching unpersisted sell order {placed.exchange_order_id}: {e}")
            result.inconsistencies.append(Inconsistency(
                inconsistency_type=InconsistencyType.PLACEMENT_NOT_PERSISTED,
                order_id=placed.exchange_order_id,
                trade_id=trade.id,
                message=str(e),
            ))

        try:
            await self._state_machine.attach_sell(trade, placed.exchange_order_id)
        except AlreadyAttachedError as e:
            logger.warning(str(e))
            result.inconsistencies.append(Inconsistency(
                inconsistency_type=InconsistencyType.SELL_ALREADY_ATTACHED,
                order_id=placed.exchange_order_id,
                trade_id=trade.id,
                message=str(e),
            ))
            return

        result.sells_placed += 1

    # --------------------------------------------------------
    # GENERIC ORDER SWEEP
    # --------------------------------------------------------

    async def sweep_open_orders(self, result: ReconciliationResult) -> None:
        """
        Sync local status for every order open on the exchange.

        Orders unknown locally are logged and skipped.

        Raises:
            ExchangeError: If open orders cannot be listed
        """
        open_orders = await self._gateway.list_open_orders(self._config.symbol)
        logger.debug(f"Exchange reports {len(open_orders)} open orders for {self._config.symbol}")

        for remote in open_orders:
            result.orders_checked += 1
            try:
                local = await self._repository.get_order_by_exchange_id(remote.exchange_order_id)
                if local is None:
                    logger.warning(
                        f"Open order {remote.exchange_order_id} ({remote.side.value} "
                        f"{remote.quantity} @ {remote.price}) not found locally, skipping"
                    )
                    result.inconsistencies.append(Inconsistency(
                        inconsistency_type=InconsistencyType.UNTRACKED_ORDER,
                        order_id=remote.exchange_order_id,
                        message="open on exchange but not in store",
                    ))
                    continue

                if local.status != remote.status:
                    await self._state_machine.apply_status_update(local, remote.status, remote.quote_quantity)
                    result.orders_synced += 1

            except PersistenceError as e:
                self._record_error(result, f"order {remote.exchange_order_id}: store error: {e}")

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _refresh(self, order: Order, result: ReconciliationResult) -> ExchangeOrder:
        """Read an order's exchange status and apply it locally."""
        remote = await self._gateway.get_order_status(order.symbol, order.exchange_order_id)
        result.orders_checked += 1
        if order.status != remote.status:
            await self._state_machine.apply_status_update(order, remote.status, remote.quote_quantity)
            result.orders_synced += 1
        return remote

    async def _sync_local(self, remote: ExchangeOrder, result: ReconciliationResult) -> Optional[Order]:
        """Apply an exchange status to the local order, if there is one."""
        local = await self._repository.get_order_by_exchange_id(remote.exchange_order_id)
        if local is None:
            logger.debug(f"Order {remote.exchange_order_id} has no local record")
            return None
        if local.status != remote.status:
            await self._state_machine.apply_status_update(local, remote.status, remote.quote_quantity)
            result.orders_synced += 1
        return local

    @staticmethod
    def _record_error(result: ReconciliationResult, message: str) -> None:
        logger.warning(message)
        result.errors.append(message)
