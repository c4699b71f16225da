"""
DCA Engine - Bot State Manager.

Owns the single BotState aggregate: loaded once at startup,
mutated by the cycle, persisted at the end of every cycle.
"""

import logging
from decimal import Decimal
from typing import Optional

from .types import BotState, TradeStatus, PersistenceError, BotStatePersistenceError
from .repository import TradingRepository
from .clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class StateManager:
    """Load/persist lifecycle for BotState."""

    def __init__(
        self,
        repository: TradingRepository,
        initial_capital: Decimal,
        clock: Optional[Clock] = None,
    ):
        self._repository = repository
        self._initial_capital = initial_capital
        self._clock = clock or SystemClock()
        self._state: Optional[BotState] = None

    @property
    def state(self) -> BotState:
        if self._state is None:
            raise RuntimeError("bot state not loaded; call load() first")
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is not None

    async def load(self) -> BotState:
        """
        Load BotState, creating a fresh one on first run.

        The fresh state is not written until the first save().
        total_profit is re-derived from SOLD trades.

        Raises:
            PersistenceError: If the store cannot be read
        """
        logger.info("Loading bot state from database...")
        state = await self._repository.get_bot_state()

        if state is None:
            logger.info(f"No existing bot state found, initializing with capital {self._initial_capital}")
            state = BotState.initial(self._initial_capital)
            now = self._clock.now()
            state.created_at = now
            state.updated_at = now
        else:
            logger.info(
                f"Bot state loaded (initial capital: {state.initial_capital}, "
                f"initial buys placed: {state.initial_buy_orders_placed_count}, "
                f"initial phase complete: {state.is_initial_buying_complete}, "
                f"total profit: {state.total_profit})"
            )
            if state.initial_capital != self._initial_capital:
                logger.warning(
                    f"Configured INITIAL_USDT {self._initial_capital} differs from stored "
                    f"initial capital {state.initial_capital}; keeping stored value"
                )

        # SOLD trades are committed before the end-of-cycle save, so the
        # trades table is authoritative for realized profit.
        realized = await self._repository.sum_profit_by_status(TradeStatus.SOLD)
        if realized != state.total_profit:
            logger.warning(
                f"Stored total profit {state.total_profit} differs from realized profit "
                f"of SOLD trades {realized}; using {realized}"
            )
            state.total_profit = realized

        self._state = state
        return state

    async def save(self) -> None:
        """
        Persist BotState (upsert), stamping last_cycle_at.

        Raises:
            BotStatePersistenceError: On any store failure
        """
        state = self.state
        now = self._clock.now()
        state.last_cycle_at = now
        state.updated_at = now

        try:
            await self._repository.upsert_bot_state(state)
        except PersistenceError as e:
            logger.critical(f"Failed to save bot state: {e}")
            raise BotStatePersistenceError(f"failed to save bot state: {e}") from e

        logger.debug("Bot state saved")
