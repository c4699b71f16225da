"""
Orchestrator - Cycle Driver.

============================================================
RESPONSIBILITY
============================================================
Runs the reconciliation engine on a fixed interval.

- One cycle at a time, never reentrant
- SIGINT/SIGTERM request a stop; the in-flight cycle finishes
- BotState persistence failure is fatal (exit code 1)
- Any other cycle error is logged and the loop continues

============================================================
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from dca_engine.adapters import MockConfig, create_gateway
from dca_engine.config import BotConfig
from dca_engine.engine import ReconciliationEngine, CycleResult
from dca_engine.repository import TradingRepository
from dca_engine.types import (
    BotStatePersistenceError,
    ConfigurationError,
    ExchangeError,
    PersistenceError,
)
from database.engine import (
    create_database_engine,
    get_session_factory,
    init_database,
    dispose_engine,
    DatabaseInitializationError,
)


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


# ============================================================
# CYCLE DRIVER
# ============================================================

class CycleDriver:
    """
    Fixed-interval loop around ReconciliationEngine.run_cycle().
    """

    def __init__(self, engine: ReconciliationEngine, interval_seconds: float):
        """
        Initialize driver.

        Args:
            engine: Reconciliation engine (state loaded or loadable)
            interval_seconds: Pause between the end of one cycle
                and the start of the next
        """
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._original_handlers: Dict[signal.Signals, Any] = {}
        self._last_result: Optional[CycleResult] = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def last_result(self) -> Optional[CycleResult]:
        return self._last_result

    def request_stop(self) -> None:
        """Stop after the current cycle."""
        if not self._stop_event.is_set():
            logger.info("Shutdown requested, finishing current cycle...")
        self._stop_event.set()

    # --------------------------------------------------------
    # Main Loop
    # --------------------------------------------------------

    async def run_single_cycle(self) -> int:
        """
        Run one cycle.

        Returns:
            Exit code (1 if BotState could not be saved)
        """
        try:
            self._last_result = await self._engine.run_cycle()
        except BotStatePersistenceError as e:
            logger.critical(f"FATAL: {e}. Stopping so state can be reconciled on restart.")
            return EXIT_FATAL
        return EXIT_OK

    async def run_forever(self) -> int:
        """
        Run cycles until a stop is requested.

        Returns:
            Exit code
        """
        self._install_signal_handlers()
        logger.info(f"Starting main loop | interval={self._interval_seconds}s")

        try:
            while not self._stop_event.is_set():
                try:
                    exit_code = await self.run_single_cycle()
                except asyncio.CancelledError:
                    logger.info("Main loop cancelled")
                    raise
                except Exception as e:
                    logger.error(f"Unexpected cycle error: {e}", exc_info=True)
                    exit_code = EXIT_OK

                if exit_code != EXIT_OK:
                    return exit_code

                await self._wait_for_next_cycle()
        finally:
            self._restore_signal_handlers()

        logger.info("Main loop stopped")
        return EXIT_OK

    async def _wait_for_next_cycle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
        except asyncio.TimeoutError:
            pass

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._original_handlers[sig] = signal.signal(sig, self._signal_handler)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[sig] = signal.getsignal(sig)
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if sys.platform == "win32":
            for sig, handler in self._original_handlers.items():
                signal.signal(sig, handler)
        else:
            loop = asyncio.get_running_loop()
            for sig in self._original_handlers:
                loop.remove_signal_handler(sig)
        self._original_handlers.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}")
        self.request_stop()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows)."""
        logger.info(f"Received signal {signum}")
        self.request_stop()


# ============================================================
# APPLICATION WIRING
# ============================================================

async def run_bot(config: BotConfig, single_cycle: bool = False) -> int:
    """
    Wire store, gateway and engine, then drive cycles.

    Args:
        config: Validated bot configuration
        single_cycle: Run one cycle and exit

    Returns:
        Exit code
    """
    strategy = config.strategy

    try:
        gateway = create_gateway(
            config.exchange,
            mock_config=MockConfig(initial_balances={strategy.quote_asset: strategy.initial_capital}),
        )
    except ConfigurationError as e:
        logger.critical(f"Invalid exchange configuration: {e}")
        return EXIT_FATAL

    db_engine = create_database_engine(config.database)

    try:
        await init_database(db_engine)
        await gateway.connect()
    except (DatabaseInitializationError, ExchangeError) as e:
        logger.critical(f"Startup failed: {e}")
        await gateway.disconnect()
        await dispose_engine(db_engine)
        return EXIT_FATAL

    session_factory = get_session_factory(db_engine)

    try:
        async with session_factory() as session:
            engine = ReconciliationEngine(
                config=strategy,
                gateway=gateway,
                repository=TradingRepository(session),
            )
            try:
                await engine.start()
            except PersistenceError as e:
                logger.critical(f"Could not load bot state: {e}")
                return EXIT_FATAL

            driver = CycleDriver(engine, config.driver.cycle_interval_seconds)
            if single_cycle:
                return await driver.run_single_cycle()
            return await driver.run_forever()
    finally:
        await gateway.disconnect()
        await dispose_engine(db_engine)
        logger.info("Bot stopped")
