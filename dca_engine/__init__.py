"""
DCA Engine Package.

============================================================
PURPOSE
============================================================
Order/trade lifecycle reconciliation for a staggered
dollar-cost-averaging spot bot.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for order status."
    "The local store is the system of record for what the
     bot itself must act on."

============================================================
MODULES
============================================================
- types: Orders, trades, bot state, exceptions
- config: Configuration dataclasses and env loading
- errors: Error taxonomy and codes
- clock: Testable time source
- pricing: Buy/sell price and profit arithmetic
- state_machine: Order/trade transitions
- placement: Initial and additional buy policies
- reconciliation: Trade opening, sell side, order sweep
- state_manager: BotState load/persist
- engine: One full trading cycle
- adapters: Exchange gateways (Binance spot, Mock)
- models: ORM models for persistence
- repository: Database operations

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderStatus,
    TradeStatus,
    # Dataclasses
    Order,
    Trade,
    BotState,
    # Exceptions
    DcaEngineError,
    ConfigurationError,
    ExchangeError,
    PersistenceError,
    PlacementPersistenceError,
    AlreadyAttachedError,
    BotStatePersistenceError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    ExchangeConfig,
    StrategyConfig,
    DatabaseConfig,
    DriverConfig,
    BotConfig,
)

# ============================================================
# CORE
# ============================================================
from .clock import Clock, SystemClock, MockClock
from .state_machine import LifecycleStateMachine, VALID_TRANSITIONS
from .placement import BuyPlacementPolicy, PlacementDecision, PlacementResult
from .reconciliation import TradeReconciler, ReconciliationResult, InconsistencyType
from .state_manager import StateManager
from .engine import ReconciliationEngine, CycleResult
from .repository import TradingRepository


__all__ = [
    "OrderSide",
    "OrderStatus",
    "TradeStatus",
    "Order",
    "Trade",
    "BotState",
    "DcaEngineError",
    "ConfigurationError",
    "ExchangeError",
    "PersistenceError",
    "PlacementPersistenceError",
    "AlreadyAttachedError",
    "BotStatePersistenceError",
    "ExchangeConfig",
    "StrategyConfig",
    "DatabaseConfig",
    "DriverConfig",
    "BotConfig",
    "Clock",
    "SystemClock",
    "MockClock",
    "LifecycleStateMachine",
    "VALID_TRANSITIONS",
    "BuyPlacementPolicy",
    "PlacementDecision",
    "PlacementResult",
    "TradeReconciler",
    "ReconciliationResult",
    "InconsistencyType",
    "StateManager",
    "ReconciliationEngine",
    "CycleResult",
    "TradingRepository",
]
