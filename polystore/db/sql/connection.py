"""Relational database engine management.

This module provides the SQLAlchemy async engine used by the SQL storage
backend. PostgreSQL is reached through asyncpg, SQLite through aiosqlite.
"""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from polystore.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``url``.

    For SQLite the parent directory of the database file is created, and
    transactions are opened with ``BEGIN IMMEDIATE`` so that DDL takes part
    in them and concurrent writers queue on the busy timeout instead of
    failing on lock upgrade.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_async_engine(url, echo=echo, pool_pre_ping=True)

    if parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(url, echo=echo)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """Get the shared engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_engine(settings.database_url, echo=settings.database_echo)
        logger.info("Created SQL engine for %s", make_url(settings.database_url).get_backend_name())
    return _engine


async def close_engine() -> None:
    """Dispose the shared engine."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None


async def reset_engine() -> None:
    """Reset the shared engine for testing purposes."""
    global _engine
    if _engine:
        try:
            await _engine.dispose()
        finally:
            _engine = None
