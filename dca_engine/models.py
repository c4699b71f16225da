"""
DCA Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the persistence store.

TABLES:
- orders: Every order the bot placed (never deleted)
- trades: Buy-then-sell positions
- bot_states: Single progress row (id = 1)

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .types import OrderStatus, TradeStatus, BOT_STATE_ID, utc_now


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    All timestamps are timezone-aware.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        Decimal: Numeric(24, 8),
    }


# ============================================================
# ORDER MODEL
# ============================================================

class OrderModel(Base):
    """Persisted order record."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    price: Mapped[Decimal] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    quote_quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.NEW.value, index=True)
    is_test: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    placed_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    executed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_orders_symbol_side_status", "symbol", "side", "status"),
    )


# ============================================================
# TRADE MODEL
# ============================================================

class TradeModel(Base):
    """
    Persisted trade record.

    sell_order_id carries no foreign key: a sell that reached the
    exchange but failed to persist is still attached.
    """

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    buy_order_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.exchange_order_id"),
        unique=True,
        nullable=False,
    )
    sell_order_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    buy_price: Mapped[Decimal] = mapped_column(nullable=False)
    buy_quantity: Mapped[Decimal] = mapped_column(nullable=False)
    sell_price_target: Mapped[Decimal] = mapped_column(nullable=False)
    actual_sell_price: Mapped[Optional[Decimal]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TradeStatus.OPEN.value, index=True)
    profit: Mapped[Optional[Decimal]] = mapped_column(nullable=True)

    opened_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    closed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_status_update: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)


# ============================================================
# BOT STATE MODEL
# ============================================================

class BotStateModel(Base):
    """Single-row bot progress record."""

    __tablename__ = "bot_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False, default=BOT_STATE_ID)

    initial_capital: Mapped[Decimal] = mapped_column(nullable=False)
    quote_balance: Mapped[Decimal] = mapped_column(nullable=False)
    base_balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_invested: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_profit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    initial_buy_orders_placed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_initial_buy_order_placed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    is_initial_buying_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_cycle_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
