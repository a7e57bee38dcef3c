"""
Database setup for the settlement engine.

This module provides an asynchronous SQLAlchemy engine, a session factory
and helper functions for creating the database schema programmatically in
development and testing.

The engine relies on PostgreSQL in production (through ``asyncpg``) and
on SQLite through ``aiosqlite`` for development and tests. SQLite's
driver defers ``BEGIN`` until the first write, which breaks SAVEPOINT
handling and lets two writers deadlock on lock upgrade, so for SQLite
every transaction is started explicitly with ``BEGIN IMMEDIATE``.
"""
from __future__ import annotations

import contextlib
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings


class Base(DeclarativeBase):  # type: ignore[call-arg]
    """Base class for declarative SQLAlchemy models.

    All ORM models inherit from this class. See ``bidbook/core/models.py``
    for the actual model definitions.
    """

    pass


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        # Disable the driver's own BEGIN handling; we emit it ourselves.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _create_engine(db_url: str, echo: bool) -> AsyncEngine:
    """Instantiate a new async engine from the given URL."""
    if db_url.startswith("sqlite"):
        engine = create_async_engine(db_url, echo=echo, connect_args={"timeout": 30})
        _install_sqlite_transaction_hooks(engine)
        return engine
    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Return a cached asynchronous SQLAlchemy engine.

    This function reads the database URL from the current settings
    (``get_settings()``) and creates an engine accordingly. Tests clear
    the cache after overriding ``DATABASE_URL`` to get a fresh engine.
    """
    settings = get_settings()
    return _create_engine(settings.database_url, echo=False)


@lru_cache(maxsize=1)
def get_async_session_factory() -> async_sessionmaker:
    """Return a cached session factory bound to the current engine."""
    return async_sessionmaker(
        bind=get_engine(), expire_on_commit=False, class_=AsyncSession
    )


@contextlib.asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Asynchronous context manager that yields a database session.

    Services commit their own unit of work so that notifications can be
    dispatched strictly after the state transition is durable. Anything
    left pending when the block exits is committed here; on error the
    session is rolled back.

    Example:

    >>> async with get_db_session() as session:
    ...     result = await place_bid(session, dispatcher, listing_id, "u1", Decimal("120"))
    """
    async with get_async_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db_schema() -> None:
    """Create all tables in the database.

    This helper is useful for development and testing where migrations
    may not have run. In production environments Alembic migrations
    should be used instead of this function.
    """
    # Import models so that they are registered on the metadata
    from . import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose of the cached engine and forget the cached factories."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    get_async_session_factory.cache_clear()
    get_engine.cache_clear()
