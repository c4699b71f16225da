"""
DCA Engine - Repository.

============================================================
PURPOSE
============================================================
Database operations for the persistence store.

RESPONSIBILITIES:
- Save/load orders
- Save/load trades
- Load/upsert the single BotState row

CRITICAL REQUIREMENTS:
- Every write commits immediately (one cycle spans many writes)
- A failed write rolls back and raises PersistenceError
- Nothing is ever deleted

============================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Iterable

from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .types import (
    Order,
    OrderSide,
    OrderStatus,
    Trade,
    TradeStatus,
    BotState,
    BOT_STATE_ID,
    PersistenceError,
    quantize_amount,
)
from .models import OrderModel, TradeModel, BotStateModel


logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Reattach UTC to datetimes read back naive (SQLite)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================
# TRADING REPOSITORY
# ============================================================

class TradingRepository:
    """
    Repository for orders, trades and bot state.

    Single writer: the engine is the only caller.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize repository.

        Args:
            session: SQLAlchemy async session
        """
        self._session = session

    async def _commit(self, action: str) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"Database write failed ({action}): {e}")
            raise PersistenceError(f"{action} failed: {e}") from e

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def create_order(self, order: Order) -> Order:
        """
        Insert a new order.

        Returns:
            The order with its surrogate id assigned

        Raises:
            PersistenceError: On any store failure (including a
                duplicate exchange_order_id)
        """
        model = OrderModel(
            exchange_order_id=order.exchange_order_id,
            symbol=order.symbol,
            side=order.side.value,
            price=order.price,
            quantity=order.quantity,
            quote_quantity=order.quote_quantity,
            status=order.status.value,
            is_test=order.is_test,
            placed_at=order.placed_at,
            executed_at=order.executed_at,
            last_updated_at=order.last_updated_at,
        )

        try:
            self._session.add(model)
            await self._session.flush()
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"Failed to insert order {order.exchange_order_id}: {e}")
            raise PersistenceError(f"insert order {order.exchange_order_id} failed: {e}") from e

        await self._commit(f"insert order {order.exchange_order_id}")
        order.id = model.id
        logger.debug(f"Order {order.exchange_order_id} saved with ID {order.id}")
        return order

    async def update_order_by_exchange_id(self, order: Order) -> None:
        """
        Write the mutable fields of an order.

        Raises:
            PersistenceError: If the order is unknown or the write fails
        """
        model = await self._get_order_model(order.exchange_order_id)
        if model is None:
            raise PersistenceError(f"order {order.exchange_order_id} not found in store")

        model.status = order.status.value
        model.quote_quantity = order.quote_quantity
        model.executed_at = order.executed_at
        model.last_updated_at = order.last_updated_at

        await self._commit(f"update order {order.exchange_order_id}")

    async def get_order_by_exchange_id(self, exchange_order_id: str) -> Optional[Order]:
        model = await self._get_order_model(exchange_order_id)
        if model:
            return self._model_to_order(model)
        return None

    async def list_orders(
        self,
        side: Optional[OrderSide] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
        symbol: Optional[str] = None,
    ) -> List[Order]:
        """List orders, oldest first."""
        query = select(OrderModel)
        if side is not None:
            query = query.where(OrderModel.side == side.value)
        if statuses is not None:
            query = query.where(OrderModel.status.in_([s.value for s in statuses]))
        if symbol is not None:
            query = query.where(OrderModel.symbol == symbol)

        result = await self._execute(query.order_by(OrderModel.id))
        return [self._model_to_order(m) for m in result.scalars().all()]

    async def list_buy_orders_without_trade(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        """
        BUY orders no trade references yet, oldest first.

        Args:
            statuses: Restrict to these order statuses
        """
        query = (
            select(OrderModel)
            .outerjoin(TradeModel, TradeModel.buy_order_id == OrderModel.exchange_order_id)
            .where(OrderModel.side == OrderSide.BUY.value)
            .where(TradeModel.id.is_(None))
        )
        if statuses is not None:
            query = query.where(OrderModel.status.in_([s.value for s in statuses]))

        result = await self._execute(query.order_by(OrderModel.id))
        return [self._model_to_order(m) for m in result.scalars().all()]

    async def _get_order_model(self, exchange_order_id: str) -> Optional[OrderModel]:
        result = await self._execute(
            select(OrderModel).where(OrderModel.exchange_order_id == exchange_order_id)
        )
        return result.scalar_one_or_none()

    # --------------------------------------------------------
    # TRADE OPERATIONS
    # --------------------------------------------------------

    async def create_trade(self, trade: Trade) -> Trade:
        """
        Insert a new trade.

        Raises:
            PersistenceError: On failure (including a second trade
                for the same buy order)
        """
        model = TradeModel(
            buy_order_id=trade.buy_order_id,
            sell_order_id=trade.sell_order_id,
            symbol=trade.symbol,
            buy_price=trade.buy_price,
            buy_quantity=trade.buy_quantity,
            sell_price_target=trade.sell_price_target,
            actual_sell_price=trade.actual_sell_price,
            status=trade.status.value,
            profit=trade.profit,
            opened_at=trade.opened_at,
            closed_at=trade.closed_at,
            last_status_update=trade.last_status_update,
        )

        try:
            self._session.add(model)
            await self._session.flush()
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"Failed to insert trade for buy order {trade.buy_order_id}: {e}")
            raise PersistenceError(f"insert trade for {trade.buy_order_id} failed: {e}") from e

        await self._commit(f"insert trade for {trade.buy_order_id}")
        trade.id = model.id
        return trade

    async def update_trade_by_id(self, trade: Trade) -> None:
        """
        Write the mutable fields of a trade.

        Raises:
            PersistenceError: If the trade is unknown or the write fails
        """
        if trade.id is None:
            raise PersistenceError(f"trade for buy order {trade.buy_order_id} has no ID")

        model = await self._session.get(TradeModel, trade.id)
        if model is None:
            raise PersistenceError(f"trade {trade.id} not found in store")

        model.sell_order_id = trade.sell_order_id
        model.actual_sell_price = trade.actual_sell_price
        model.status = trade.status.value
        model.profit = trade.profit
        model.closed_at = trade.closed_at
        model.last_status_update = trade.last_status_update

        await self._commit(f"update trade {trade.id}")

    async def get_trade_by_buy_order_id(self, buy_order_id: str) -> Optional[Trade]:
        result = await self._execute(
            select(TradeModel).where(TradeModel.buy_order_id == buy_order_id)
        )
        model = result.scalar_one_or_none()
        return self._model_to_trade(model) if model else None

    async def list_trades_by_status(self, status: TradeStatus) -> List[Trade]:
        """Trades in a status, oldest first."""
        result = await self._execute(
            select(TradeModel)
            .where(TradeModel.status == status.value)
            .order_by(TradeModel.id)
        )
        return [self._model_to_trade(m) for m in result.scalars().all()]

    async def count_trades_by_status(self, status: TradeStatus) -> int:
        result = await self._execute(
            select(func.count()).select_from(TradeModel).where(TradeModel.status == status.value)
        )
        return int(result.scalar_one())

    async def sum_profit_by_status(self, status: TradeStatus) -> Decimal:
        """Total stored profit of trades in a status (0 when none)."""
        result = await self._execute(
            select(func.sum(TradeModel.profit)).where(TradeModel.status == status.value)
        )
        total = result.scalar_one()
        if total is None:
            return quantize_amount(Decimal("0"))
        return quantize_amount(Decimal(str(total)))

    # --------------------------------------------------------
    # BOT STATE OPERATIONS
    # --------------------------------------------------------

    async def get_bot_state(self) -> Optional[BotState]:
        model = await self._session.get(BotStateModel, BOT_STATE_ID, populate_existing=True)
        if model is None:
            return None
        return self._model_to_bot_state(model)

    async def upsert_bot_state(self, state: BotState) -> None:
        """
        Insert or fully overwrite the BotState row.

        Raises:
            PersistenceError: On failure
        """
        values = {
            "id": BOT_STATE_ID,
            "initial_capital": state.initial_capital,
            "quote_balance": state.quote_balance,
            "base_balance": state.base_balance,
            "total_invested": state.total_invested,
            "total_profit": state.total_profit,
            "initial_buy_orders_placed_count": state.initial_buy_orders_placed_count,
            "last_initial_buy_order_placed_at": state.last_initial_buy_order_placed_at,
            "is_initial_buying_complete": state.is_initial_buying_complete,
            "last_cycle_at": state.last_cycle_at,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
        }

        try:
            dialect = self._session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
                stmt = insert(BotStateModel).values(**values)
                update_values = {k: v for k, v in values.items() if k not in ("id", "created_at")}
                stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=update_values)
                await self._session.execute(stmt)
            else:
                await self._session.merge(BotStateModel(**values))
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"Failed to upsert bot state: {e}")
            raise PersistenceError(f"upsert bot state failed: {e}") from e

        await self._commit("upsert bot state")
        state.persisted = True

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _execute(self, statement):
        try:
            return await self._session.execute(statement)
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"Database read failed: {e}")
            raise PersistenceError(f"read failed: {e}") from e

    def _model_to_order(self, model: OrderModel) -> Order:
        """Convert model to Order."""
        return Order(
            id=model.id,
            exchange_order_id=model.exchange_order_id,
            symbol=model.symbol,
            side=OrderSide(model.side),
            price=model.price,
            quantity=model.quantity,
            quote_quantity=model.quote_quantity,
            status=OrderStatus(model.status),
            is_test=model.is_test,
            placed_at=_aware(model.placed_at),
            executed_at=_aware(model.executed_at),
            last_updated_at=_aware(model.last_updated_at),
        )

    def _model_to_trade(self, model: TradeModel) -> Trade:
        """Convert model to Trade."""
        return Trade(
            id=model.id,
            buy_order_id=model.buy_order_id,
            sell_order_id=model.sell_order_id,
            symbol=model.symbol,
            buy_price=model.buy_price,
            buy_quantity=model.buy_quantity,
            sell_price_target=model.sell_price_target,
            actual_sell_price=model.actual_sell_price,
            status=TradeStatus(model.status),
            profit=model.profit,
            opened_at=_aware(model.opened_at),
            closed_at=_aware(model.closed_at),
            last_status_update=_aware(model.last_status_update),
        )

    def _model_to_bot_state(self, model: BotStateModel) -> BotState:
        """Convert model to BotState."""
        return BotState(
            id=model.id,
            initial_capital=model.initial_capital,
            quote_balance=model.quote_balance,
            base_balance=model.base_balance,
            total_invested=model.total_invested,
            total_profit=model.total_profit,
            initial_buy_orders_placed_count=model.initial_buy_orders_placed_count,
            last_initial_buy_order_placed_at=_aware(model.last_initial_buy_order_placed_at),
            is_initial_buying_complete=model.is_initial_buying_complete,
            last_cycle_at=_aware(model.last_cycle_at),
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            persisted=True,
        )
