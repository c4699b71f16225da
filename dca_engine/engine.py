"""
DCA Engine - Reconciliation Engine.

============================================================
PURPOSE
============================================================
Runs one trading cycle end to end.

CYCLE PHASES (fixed order):
1. Refresh balances and current price
2. Initial staggered buys
3. Sell-side reconciliation (open trades, attach sells, close)
4. Generic open-order sweep
5. Additional buys
6. Persist BotState (exactly one write, always last)

FAILURE HANDLING:
- Gateway/store errors skip the affected step only
- No price: placement steps are skipped, reconciliation runs
- BotState save failure raises BotStatePersistenceError

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .types import (
    BotState,
    ExchangeError,
    PersistenceError,
)
from .config import StrategyConfig
from .clock import Clock, SystemClock
from .repository import TradingRepository
from .state_machine import LifecycleStateMachine
from .placement import BuyPlacementPolicy, PlacementResult
from .reconciliation import TradeReconciler, ReconciliationResult
from .state_manager import StateManager
from .adapters.base import ExchangeGateway


logger = logging.getLogger(__name__)


# ============================================================
# CYCLE RESULT
# ============================================================

@dataclass
class CycleResult:
    """Result of one trading cycle."""

    cycle_number: int
    started_at: datetime
    completed_at: Optional[datetime] = None

    current_price: Optional[Decimal] = None
    """None when the price could not be read."""

    balances_refreshed: bool = False

    initial_buy: Optional[PlacementResult] = None
    additional_buy: Optional[PlacementResult] = None

    reconciliation: ReconciliationResult = field(default_factory=ReconciliationResult)

    errors: List[str] = field(default_factory=list)
    """Step-level errors (reconciliation keeps its own)."""

    @property
    def orders_placed(self) -> int:
        placed = sum(
            1 for r in (self.initial_buy, self.additional_buy)
            if r is not None and r.placed
        )
        return placed + self.reconciliation.sells_placed

    @property
    def success(self) -> bool:
        return not self.errors and self.reconciliation.success


# ============================================================
# RECONCILIATION ENGINE
# ============================================================

class ReconciliationEngine:
    """
    Keeps orders, trades and BotState consistent with the exchange.

    Single worker: run_cycle() must not be called concurrently.
    """

    def __init__(
        self,
        config: StrategyConfig,
        gateway: ExchangeGateway,
        repository: TradingRepository,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize engine.

        Args:
            config: Strategy configuration
            gateway: Exchange gateway (connected by the caller)
            repository: Persistence store
            clock: Time source
        """
        self._config = config
        self._gateway = gateway
        self._repository = repository
        self._clock = clock or SystemClock()

        self._state_machine = LifecycleStateMachine(
            repository,
            clock=self._clock,
            is_test=gateway.is_testnet,
        )
        self._placement = BuyPlacementPolicy(
            config,
            gateway,
            repository,
            self._state_machine,
            clock=self._clock,
        )
        self._reconciler = TradeReconciler(config, gateway, repository, self._state_machine)
        self._state_manager = StateManager(repository, config.initial_capital, clock=self._clock)

        self._cycle_count = 0

    @property
    def state(self) -> BotState:
        return self._state_manager.state

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    async def start(self) -> BotState:
        """
        Load BotState from the store.

        Raises:
            PersistenceError: If the store cannot be read
        """
        return await self._state_manager.load()

    async def run_cycle(self) -> CycleResult:
        """
        Run one full cycle.

        Raises:
            BotStatePersistenceError: If BotState cannot be saved
        """
        self._cycle_count += 1
        result = CycleResult(cycle_number=self._cycle_count, started_at=self._clock.now())

        if not self._state_manager.is_loaded:
            try:
                await self.start()
            except PersistenceError as e:
                self._record_error(result, f"cannot load bot state, skipping cycle: {e}")
                result.completed_at = self._clock.now()
                return result

        state = self._state_manager.state

        logger.info(f"Starting trading cycle #{self._cycle_count}...")

        # 1. Balances and price
        await self._refresh_balances(state, result)
        result.current_price = await self._fetch_price(result)

        # 2. Initial buys
        if result.current_price is not None and not state.is_initial_buying_complete:
            try:
                result.initial_buy = await self._placement.place_initial_buy(state, result.current_price)
            except PersistenceError as e:
                self._record_error(result, f"initial buy step failed: {e}")

        # 3. Sell-side reconciliation
        try:
            await self._reconciler.open_trades_for_filled_buys(result.reconciliation)
        except PersistenceError as e:
            self._record_error(result, f"trade opening failed: {e}")

        try:
            await self._reconciler.reconcile_open_trades(state, result.reconciliation)
        except PersistenceError as e:
            self._record_error(result, f"sell-side reconciliation failed: {e}")

        # 4. Generic sweep
        try:
            await self._reconciler.sweep_open_orders(result.reconciliation)
        except ExchangeError as e:
            self._record_error(result, f"open order sweep failed: {e}")

        # 5. Additional buys
        if result.current_price is not None and state.is_initial_buying_complete:
            try:
                result.additional_buy = await self._placement.place_additional_buy(state, result.current_price)
            except PersistenceError as e:
                self._record_error(result, f"additional buy step failed: {e}")

        # 6. Persist BotState
        await self._state_manager.save()

        result.completed_at = self._clock.now()
        logger.info(
            f"Trading cycle #{self._cycle_count} completed: "
            f"{result.orders_placed} orders placed, "
            f"{result.reconciliation.trades_opened} trades opened, "
            f"{result.reconciliation.trades_sold} trades sold, "
            f"{len(result.errors) + len(result.reconciliation.errors)} errors"
        )
        return result

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _refresh_balances(self, state: BotState, result: CycleResult) -> None:
        try:
            quote = await self._gateway.get_account_balance(self._config.quote_asset)
            base = await self._gateway.get_account_balance(self._config.base_asset)
        except ExchangeError as e:
            self._record_error(result, f"failed to refresh account balances, keeping projected values: {e}")
            return

        state.update_balances(quote, base)
        result.balances_refreshed = True
        logger.info(
            f"Current balances: {self._config.quote_asset}: {quote}, "
            f"{self._config.base_asset}: {base}"
        )

    async def _fetch_price(self, result: CycleResult) -> Optional[Decimal]:
        try:
            price = await self._gateway.get_current_price(self._config.symbol)
        except ExchangeError as e:
            self._record_error(result, f"failed to get current price, skipping placements: {e}")
            return None

        logger.info(f"Current market price for {self._config.symbol}: {price}")
        return price

    @staticmethod
    def _record_error(result: CycleResult, message: str) -> None:
        logger.error(message)
        result.errors.append(message)
