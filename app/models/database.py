"""Database engine, session factory, and lifecycle helpers.

FastAPI handlers get a session per request through ``get_db``; background
work (dispatch, relay, watchdog) opens its own with ``session_scope`` since
the request session is closed by the time it runs.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import Settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``DateTime`` (no tz) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
#  Declarative Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """SQLAlchemy 2.0 declarative base for all ORM models."""


# ---------------------------------------------------------------------------
#  Async engine
# ---------------------------------------------------------------------------

_async_engine: Any = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


async def init_db(settings: Settings) -> None:
    """Create the async engine and session factory, then ensure tables exist.

    Called during FastAPI lifespan startup.
    """
    global _async_engine, AsyncSessionLocal  # noqa: PLW0603

    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": False}
    if not settings.database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=10, max_overflow=20)

    _async_engine = create_async_engine(settings.database_url, **engine_kwargs)
    AsyncSessionLocal = async_sessionmaker(
        _async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Import models so every table is registered on Base.metadata.
    from app.models import fix_job, tenant, user  # noqa: F401

    async with _async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Async database engine initialized")


async def close_db() -> None:
    """Dispose the async engine.  Called during FastAPI lifespan shutdown."""
    global _async_engine  # noqa: PLW0603
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None
        logger.info("Async database engine disposed")


def _session_factory() -> async_sessionmaker[AsyncSession]:
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized — call init_db() first")
    return AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async DB session with auto-commit / rollback."""
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Standalone session for background tasks, committed on clean exit."""
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
