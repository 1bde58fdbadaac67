from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from booking_service.db import models  # noqa: F401  (register tables)
from booking_service.db.base import metadata
from booking_service.db.session import make_session_factory
from booking_service.services import live_log
from booking_service.services.readiness_reminders import ReminderPolicy
from tests.fakes import FakeNotifier, FakeOrderRepository

UTC = timezone.utc


@pytest.fixture(autouse=True)
def _clean_live_log():
    live_log.clear()
    yield
    live_log.clear()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


@pytest.fixture
def repo() -> FakeOrderRepository:
    return FakeOrderRepository()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def policy() -> ReminderPolicy:
    return ReminderPolicy(notify_timeout_seconds=0.05, store_timeout_seconds=0.05, timezone="UTC")


@pytest_asyncio.fixture
async def async_session_factory():
    """Session factory over an in-memory sqlite database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    try:
        yield make_session_factory(engine)
    finally:
        await engine.dispose()
