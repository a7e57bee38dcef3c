"""
Shared fixtures.

Every test gets its own file-backed SQLite database, fresh settings, a
fresh lock registry and a recording notification dispatcher. A file is
used rather than ``:memory:`` so that concurrent sessions really are
separate connections.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator

import pytest

from bidbook.core.config import get_settings
from bidbook.core.db import dispose_engine, get_async_session_factory, init_db_schema
from bidbook.core.locks import get_lock_registry
from bidbook.core.models import Listing, ListingStatus, ListingType
from bidbook.core.services.notifications import LoggingNotificationDispatcher, get_notification_dispatcher

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_lock_registry.cache_clear()
    get_notification_dispatcher.cache_clear()


@pytest.fixture(autouse=True)
async def database(tmp_path, monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[None]:
    """Point the engine at a throwaway SQLite file and create the schema."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'bidbook.db'}")
    monkeypatch.setenv("BIDBOOK_ENV", "test")
    monkeypatch.setenv("BIDBOOK_CRON_SECRET", "cron-secret")
    monkeypatch.setenv("BIDBOOK_ADMIN_API_KEY", "admin-key")
    monkeypatch.delenv("BIDBOOK_NOTIFICATION_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("BIDBOOK_MAX_COUNTER_OFFERS", raising=False)
    _clear_caches()
    await dispose_engine()
    await init_db_schema()
    yield
    await dispose_engine()
    _clear_caches()


@pytest.fixture()
def session_factory():  # type: ignore[no-untyped-def]
    return get_async_session_factory()


@pytest.fixture()
async def db(session_factory):  # type: ignore[no-untyped-def]
    async with session_factory() as session:
        yield session


@pytest.fixture()
def dispatcher() -> LoggingNotificationDispatcher:
    return LoggingNotificationDispatcher()


@pytest.fixture()
def make_listing(session_factory):  # type: ignore[no-untyped-def]
    """Insert a listing; an active auction ending a day after ``T0`` by default."""

    async def _make(**overrides) -> Listing:  # type: ignore[no-untyped-def]
        values = {
            "seller_id": "seller-1",
            "title": "Vintage camera",
            "listing_type": ListingType.auction,
            "status": ListingStatus.active,
            "starting_price": Decimal("100.00"),
            "end_time": T0 + timedelta(days=1),
        }
        values.update(overrides)
        values.setdefault("current_price", values["starting_price"])
        async with session_factory() as session:
            listing = Listing(**values)
            session.add(listing)
            await session.commit()
        return listing

    return _make
