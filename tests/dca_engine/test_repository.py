"""
Repository Tests.

Order, trade and bot state persistence against in-memory SQLite.
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from dca_engine.repository import TradingRepository
from dca_engine.types import (
    BotState,
    Order,
    OrderSide,
    OrderStatus,
    Trade,
    TradeStatus,
    PersistenceError,
)


SYMBOL = "BTCUSDT"


def _order(order_id, side=OrderSide.BUY, status=OrderStatus.NEW, price=Decimal("99")):
    return Order(
        exchange_order_id=order_id,
        symbol=SYMBOL,
        side=side,
        price=price,
        quantity=Decimal("0.1"),
        quote_quantity=price * Decimal("0.1"),
        status=status,
    )


def _trade(buy_order_id):
    return Trade(
        buy_order_id=buy_order_id,
        symbol=SYMBOL,
        buy_price=Decimal("99"),
        buy_quantity=Decimal("0.1"),
        sell_price_target=Decimal("100.98"),
    )


class TestOrderPersistence:
    """Tests for order storage."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, repository):
        created = await repository.create_order(_order("1001"))

        assert created.id is not None
        loaded = await repository.get_order_by_exchange_id("1001")
        assert loaded.id == created.id
        assert loaded.status == OrderStatus.NEW
        assert loaded.placed_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, repository):
        assert await repository.get_order_by_exchange_id("missing") is None

    @pytest.mark.asyncio
    async def test_update_unknown_order_raises(self, repository):
        with pytest.raises(PersistenceError):
            await repository.update_order_by_exchange_id(_order("missing"))

    @pytest.mark.asyncio
    async def test_list_orders_filters(self, repository):
        await repository.create_order(_order("1001", status=OrderStatus.NEW))
        await repository.create_order(_order("1002", status=OrderStatus.FILLED))
        await repository.create_order(_order("1003", side=OrderSide.SELL, status=OrderStatus.NEW))

        active_buys = await repository.list_orders(
            side=OrderSide.BUY,
            statuses=[OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED],
            symbol=SYMBOL,
        )

        assert [o.exchange_order_id for o in active_buys] == ["1001"]
        assert len(await repository.list_orders()) == 3

    @pytest.mark.asyncio
    async def test_buy_orders_without_trade(self, repository):
        await repository.create_order(_order("1001", status=OrderStatus.FILLED))
        await repository.create_order(_order("1002", status=OrderStatus.FILLED))
        await repository.create_order(_order("1003", status=OrderStatus.CANCELED))
        await repository.create_trade(_trade("1001"))

        pending = await repository.list_buy_orders_without_trade(statuses=[OrderStatus.FILLED])

        assert [o.exchange_order_id for o in pending] == ["1002"]


class TestTradePersistence:
    """Tests for trade storage."""

    @pytest.mark.asyncio
    async def test_one_trade_per_buy_order(self, repository):
        await repository.create_order(_order("1001", status=OrderStatus.FILLED))
        await repository.create_trade(_trade("1001"))

        with pytest.raises(PersistenceError):
            await repository.create_trade(_trade("1001"))

        assert await repository.count_trades_by_status(TradeStatus.OPEN) == 1

    @pytest.mark.asyncio
    async def test_update_and_list_by_status(self, repository):
        await repository.create_order(_order("1001", status=OrderStatus.FILLED))
        await repository.create_order(_order("1002", status=OrderStatus.FILLED))
        first = await repository.create_trade(_trade("1001"))
        await repository.create_trade(_trade("1002"))

        first.sell_order_id = "2001"
        first.status = TradeStatus.SOLD
        first.actual_sell_price = Decimal("100.98")
        first.profit = Decimal("0.198")
        await repository.update_trade_by_id(first)

        sold = await repository.list_trades_by_status(TradeStatus.SOLD)
        assert len(sold) == 1
        assert sold[0].sell_order_id == "2001"
        assert sold[0].profit == Decimal("0.198")
        assert await repository.count_trades_by_status(TradeStatus.OPEN) == 1

    @pytest.mark.asyncio
    async def test_sum_profit_by_status(self, repository):
        assert await repository.sum_profit_by_status(TradeStatus.SOLD) == Decimal("0")

        for buy_id, profit in (("1001", "0.198"), ("1002", "0.2")):
            await repository.create_order(_order(buy_id, status=OrderStatus.FILLED))
            trade = await repository.create_trade(_trade(buy_id))
            trade.status = TradeStatus.SOLD
            trade.profit = Decimal(profit)
            await repository.update_trade_by_id(trade)
        await repository.create_order(_order("1003", status=OrderStatus.FILLED))
        await repository.create_trade(_trade("1003"))

        assert await repository.sum_profit_by_status(TradeStatus.SOLD) == Decimal("0.398")
        assert await repository.sum_profit_by_status(TradeStatus.OPEN) == Decimal("0")

    @pytest.mark.asyncio
    async def test_update_trade_without_id_raises(self, repository):
        with pytest.raises(PersistenceError):
            await repository.update_trade_by_id(_trade("1001"))


class TestBotStatePersistence:
    """Tests for the single BotState row."""

    @pytest.mark.asyncio
    async def test_missing_state_returns_none(self, repository):
        assert await repository.get_bot_state() is None

    @pytest.mark.asyncio
    async def test_upsert_inserts_then_overwrites(self, repository):
        state = BotState.initial(Decimal("100"))
        await repository.upsert_bot_state(state)
        assert state.persisted is True

        state.initial_buy_orders_placed_count = 3
        state.quote_balance = Decimal("70")
        state.last_initial_buy_order_placed_at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        await repository.upsert_bot_state(state)

        loaded = await repository.get_bot_state()
        assert loaded.id == 1
        assert loaded.persisted is True
        assert loaded.initial_buy_orders_placed_count == 3
        assert loaded.quote_balance == Decimal("70")
        assert loaded.last_initial_buy_order_placed_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_commit_failure_raises_persistence_error(self):
        session = AsyncMock()
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("disk I/O error"))
        session.get_bind = MagicMock()
        session.get_bind.return_value.dialect.name = "other"
        repository = TradingRepository(session)

        with pytest.raises(PersistenceError):
            await repository.upsert_bot_state(BotState.initial(Decimal("100")))

        session.rollback.assert_awaited()
