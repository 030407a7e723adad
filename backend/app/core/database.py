"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production,
aiosqlite for local runs and tests).

Provides:
    • Async engine and session factory builders
    • Base model for ORM entities
    • Connectivity probe used by the worker before each job
    • Schema bootstrap / engine disposal

Usage:
    from backend.app.core.database import build_engine, build_session_factory

    engine = build_engine()
    sessions = build_session_factory(engine)
    async with sessions() as session:
        ...
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
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import Settings, settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def build_engine(
    url: Optional[str] = None,
    *,
    app_settings: Optional[Settings] = None,
) -> AsyncEngine:
    """Create an async engine; pool options only apply to server databases."""
    cfg = app_settings or settings
    url = url or cfg.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=cfg.DATABASE_ECHO)
    return create_async_engine(
        url,
        pool_size=cfg.DATABASE_POOL_SIZE,
        max_overflow=cfg.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=cfg.DATABASE_ECHO,
    )


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def check_connection(engine: AsyncEngine) -> bool:
    """Round-trip a trivial query. False when the database is unreachable."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.warning("Database ping failed: %s", exc)
        return False


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # make sure ORM tables are registered on Base.metadata
    from backend.app.alerts import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
