"""
DCA Engine - Buy Placement Policies.

============================================================
PURPOSE
============================================================
Decides when and where buy orders are placed.

POLICIES:
1. Initial staggered buys
   - A fixed number of buys, paced by order_interval_minutes
   - Placed initial_buy_percentage below market
   - Completion is one-way
2. Additional buys (after the initial phase)
   - One per cycle while balance and open-trade ceiling allow
   - Placed at the first buy_percentages level below market
   - Optional price-level deduplication against resting buys

BALANCE PROJECTION:
    Every placement debits BotState.quote_balance by the order
    amount right away. The next authoritative balance read
    corrects the projection.

============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .types import (
    BotState,
    Order,
    OrderSide,
    TradeStatus,
    ExchangeError,
    PlacementPersistenceError,
    ACTIVE_ORDER_STATUSES,
)
from .config import StrategyConfig
from .clock import Clock, SystemClock
from .pricing import calculate_buy_price, calculate_quantity, within_tolerance
from .repository import TradingRepository
from .state_machine import LifecycleStateMachine
from .adapters.base import ExchangeGateway


logger = logging.getLogger(__name__)


# ============================================================
# PLACEMENT RESULT
# ============================================================

class PlacementDecision(Enum):
    """Outcome of one policy evaluation."""

    PLACED = "PLACED"
    PHASE_INACTIVE = "PHASE_INACTIVE"
    INTERVAL_NOT_ELAPSED = "INTERVAL_NOT_ELAPSED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    MAX_OPEN_TRADES = "MAX_OPEN_TRADES"
    NO_BUY_LEVELS = "NO_BUY_LEVELS"
    LEVEL_ALREADY_RESTING = "LEVEL_ALREADY_RESTING"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"


@dataclass
class PlacementResult:
    """Result of one policy evaluation."""

    decision: PlacementDecision

    order: Optional[Order] = None
    """Placed order (also set when persistence failed)."""

    persisted: bool = True
    """False when the order reached the exchange but not the store."""

    error: Optional[str] = None

    @property
    def placed(self) -> bool:
        return self.decision == PlacementDecision.PLACED


# ============================================================
# BUY PLACEMENT POLICY
# ============================================================

class BuyPlacementPolicy:
    """
    Initial and additional buy placement.

    Both policies mutate the BotState passed in; the caller
    persists it at the end of the cycle.
    """

    def __init__(
        self,
        config: StrategyConfig,
        gateway: ExchangeGateway,
        repository: TradingRepository,
        state_machine: LifecycleStateMachine,
        clock: Optional[Clock] = None,
    ):
        self._config = config
        self._gateway = gateway
        self._repository = repository
        self._state_machine = state_machine
        self._clock = clock or SystemClock()

    # --------------------------------------------------------
    # INITIAL STAGGERED BUYS
    # --------------------------------------------------------

    async def place_initial_buy(self, state: BotState, current_price: Decimal) -> PlacementResult:
        """
        Place at most one initial buy.

        Args:
            state: Bot state (mutated on placement)
            current_price: Latest market price
        """
        target = self._config.initial_buy_orders

        if state.is_initial_buying_complete:
            return PlacementResult(PlacementDecision.PHASE_INACTIVE)

        if state.initial_buy_orders_placed_count >= target:
            logger.info("Initial buy orders target reached, marking phase complete")
            state.complete_initial_buying()
            return PlacementResult(PlacementDecision.PHASE_INACTIVE)

        now = self._clock.now()
        last_at = state.last_initial_buy_order_placed_at
        interval_seconds = self._config.order_interval_minutes * 60
        if last_at is not None and (now - last_at).total_seconds() < interval_seconds:
            logger.debug(
                f"Initial buy interval not elapsed "
                f"({(now - last_at).total_seconds():.0f}s of {interval_seconds}s)"
            )
            return PlacementResult(PlacementDecision.INTERVAL_NOT_ELAPSED)

        if state.quote_balance < self._config.order_amount:
            logger.info(
                f"Insufficient {self._config.quote_asset} balance for initial buy order "
                f"(available: {state.quote_balance}, needed: {self._config.order_amount})"
            )
            return PlacementResult(PlacementDecision.INSUFFICIENT_BALANCE)

        buy_price = calculate_buy_price(current_price, self._config.initial_buy_percentage)
        logger.info(
            f"Placing initial buy order {state.initial_buy_orders_placed_count + 1}/{target} "
            f"at {buy_price} (market {current_price})"
        )

        result = await self._place_buy(buy_price)
        if result.order is None:
            return result

        state.record_initial_buy(now, target)
        state.project_spend(self._config.order_amount)

        if state.is_initial_buying_complete:
            logger.info(f"All {target} initial buy orders placed, initial phase complete")

        return result

    # --------------------------------------------------------
    # ADDITIONAL BUYS
    # --------------------------------------------------------

    async def place_additional_buy(self, state: BotState, current_price: Decimal) -> PlacementResult:
        """
        Place at most one additional buy.

        Raises:
            PersistenceError: If open trades or resting orders
                cannot be read
        """
        if not state.is_initial_buying_complete:
            return PlacementResult(PlacementDecision.PHASE_INACTIVE)

        if state.quote_balance < self._config.order_amount:
            logger.debug(
                f"Not enough balance for an additional buy "
                f"({state.quote_balance} < {self._config.order_amount})"
            )
            return PlacementResult(PlacementDecision.INSUFFICIENT_BALANCE)

        open_trades = await self._repository.count_trades_by_status(TradeStatus.OPEN)
        if open_trades >= self._config.max_open_trades:
            logger.debug(f"Open trades at ceiling ({open_trades}/{self._config.max_open_trades})")
            return PlacementResult(PlacementDecision.MAX_OPEN_TRADES)

        if not self._config.buy_percentages:
            logger.debug("No buy percentages configured, skipping additional buy")
            return PlacementResult(PlacementDecision.NO_BUY_LEVELS)

        buy_price = calculate_buy_price(current_price, self._config.buy_percentages[0])

        if self._config.dedupe_price_levels and await self._level_is_resting(buy_price):
            return PlacementResult(PlacementDecision.LEVEL_ALREADY_RESTING)

        logger.info(
            f"Placing additional buy at {buy_price} "
            f"({self._config.buy_percentages[0]}% below {current_price})"
        )

        result = await self._place_buy(buy_price)
        if result.order is not None:
            state.project_spend(self._config.order_amount)
        return result

    async def _level_is_resting(self, buy_price: Decimal) -> bool:
        resting = await self._repository.list_orders(
            side=OrderSide.BUY,
            statuses=ACTIVE_ORDER_STATUSES,
            symbol=self._config.symbol,
        )
        for order in resting:
            if within_tolerance(order.price, buy_price, self._config.price_level_tolerance_pct):
                logger.info(
                    f"Buy order {order.exchange_order_id} already rests at {order.price}, "
                    f"skipping additional buy at {buy_price}"
                )
                return True
        return False

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _place_buy(self, buy_price: Decimal) -> PlacementResult:
        """Place and record a buy for order_amount at buy_price."""
        quantity = calculate_quantity(self._config.order_amount, buy_price)

        try:
            placed = await self._gateway.place_limit_order(
                self._config.symbol,
                OrderSide.BUY,
                buy_price,
                quantity,
            )
        except ExchangeError as e:
            logger.error(f"Failed to place buy order at {buy_price}: {e} (code={e.code})")
            return PlacementResult(PlacementDecision.EXCHANGE_ERROR, error=str(e))

        try:
            order = await self._state_machine.record_placement(
                side=OrderSide.BUY,
                symbol=self._config.symbol,
                price=placed.price,
                quantity=placed.quantity,
                exchange_order_id=placed.exchange_order_id,
                status=placed.status,
                placed_at=placed.placed_at,
            )
        except PlacementPersistenceError as e:
            logger.warning(f"Treating buy order {placed.exchange_order_id} as placed: {e}")
            return PlacementResult(
                PlacementDecision.PLACED,
                order=e.order,
                persisted=False,
                error=str(e),
            )

        return PlacementResult(PlacementDecision.PLACED, order=order)
