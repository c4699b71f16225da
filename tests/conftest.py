"""
Shared test fixtures for the DCA bot tests.

Provides reusable fixtures for:
- Async database sessions (in-memory SQLite)
- Mock exchange gateway and clock
- Strategy configuration
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from dca_engine.adapters import MockExchangeGateway, MockConfig
from dca_engine.clock import MockClock
from dca_engine.config import StrategyConfig, DatabaseConfig
from dca_engine.repository import TradingRepository
from dca_engine.state_machine import LifecycleStateMachine
from database.engine import (
    create_database_engine,
    get_session_factory,
    init_database,
)


SYMBOL = "BTCUSDT"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_engine():
    """Create an in-memory async SQLite engine with all tables."""
    engine = create_database_engine(DatabaseConfig(url="sqlite+aiosqlite:///:memory:"))
    await init_database(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine):
    """Provide an async database session for tests."""
    session_factory = get_session_factory(async_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(db_session):
    return TradingRepository(db_session)


# ---------------------------------------------------------------------------
# Engine collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def strategy_config():
    """100 USDT split into 10 USDT orders."""
    return StrategyConfig(
        symbol=SYMBOL,
        quote_asset="USDT",
        base_asset="BTC",
        initial_capital=Decimal("100"),
        order_amount=Decimal("10"),
        initial_buy_percentage=Decimal("1.0"),
        order_interval_minutes=2,
        buy_percentages=[Decimal("1"), Decimal("2")],
        sell_profit_percentage=Decimal("2.0"),
        max_open_trades=10,
    )


@pytest.fixture
def gateway():
    """Mock exchange funded with 100 USDT, BTCUSDT at 100."""
    gw = MockExchangeGateway(MockConfig(initial_balances={"USDT": Decimal("100")}))
    gw.set_price(SYMBOL, Decimal("100"))
    return gw


@pytest.fixture
def state_machine(repository, clock):
    return LifecycleStateMachine(repository, clock=clock, is_test=True)
