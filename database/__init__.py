"""
Database Package Initialization.

============================================================
PURPOSE
============================================================
Async engine/session bootstrap for the persistence store.
Models and store operations live in dca_engine.models and
dca_engine.repository.

============================================================
"""

from .engine import (
    DEFAULT_DATABASE_URL,
    REQUIRED_TABLES,
    get_database_url,
    create_database_engine,
    get_session_factory,
    init_database,
    dispose_engine,
    DatabaseInitializationError,
)


__all__ = [
    "DEFAULT_DATABASE_URL",
    "REQUIRED_TABLES",
    "get_database_url",
    "create_database_engine",
    "get_session_factory",
    "init_database",
    "dispose_engine",
    "DatabaseInitializationError",
]
