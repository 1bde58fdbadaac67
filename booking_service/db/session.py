from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from booking_service.config import settings

__all__ = ["engine", "SessionLocal", "make_session_factory"]


def make_session_factory(engine_: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine_, expire_on_commit=False)


engine = create_async_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_timeout=settings.store_timeout_seconds,
    future=True,
)
SessionLocal = make_session_factory(engine)
