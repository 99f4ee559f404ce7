"""
Database engine and session factory.

Tenant scoping does not happen here. Sessions are plain; every query that
touches tenant data goes through TenantStore, which takes an explicit
organization_id on each method.

The engine is created lazily on first use so that importing this module
(from the API, from Celery workers, from tests) never opens a pool against
the configured DATABASE_URL.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from policy_rag.core.config import settings
from policy_rag.models.base import Base

logger = logging.getLogger(__name__)

_engine:  Optional[AsyncEngine] = None
_factory: Optional[async_sessionmaker[AsyncSession]] = None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(database_url: str, **overrides) -> AsyncEngine:
    """
    Create an AsyncEngine with the pool settings from config.

    SQLite (aiosqlite) does not take pool sizing arguments; they are only
    applied for server databases.
    """
    kwargs: dict = {"echo": settings.db_echo_sql}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,          # detect stale connections before use
            pool_recycle=3600,           # recycle connections every hour
        )
    kwargs.update(overrides)
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url)
        logger.info("DB engine created | url=%s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _factory
    if _factory is None:
        _factory = build_session_factory(get_engine())
    return _factory


async def dispose_engine() -> None:
    global _engine, _factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _factory = None


async def create_all(engine: Optional[AsyncEngine] = None) -> None:
    """Create every table. Used by local dev and the test suite; production uses migrations."""
    # Import for side effects: registers every mapper on Base.metadata.
    from policy_rag import models  # noqa: F401

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by the /ready endpoint."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
