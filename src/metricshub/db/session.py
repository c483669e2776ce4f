"""Async database session management.

Production setup uses asyncpg with a pooled engine. Components take an
``async_sessionmaker`` so tests can run them against their own engine.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metricshub.config import settings

# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════


def build_engine(url: str, **overrides: Any) -> AsyncEngine:
    """Create an engine with pool sizing appropriate for the driver."""
    kwargs: dict[str, Any] = {"echo": False}
    if url.startswith("postgresql"):
        # Workers, scheduler and API share one pool
        kwargs.update(
            pool_size=20,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    kwargs.update(overrides)
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues
        autoflush=False,
    )


async_engine = build_engine(settings.database_url)
AsyncSessionLocal: async_sessionmaker[AsyncSession] = make_session_factory(async_engine)


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def db_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commits on success, rolls back on error.

    Usage:
        async with db_session(self._sessions) as db:
            result = await db.execute(...)
    """
    async with (factory or AsyncSessionLocal)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create tables from models.

    In production, use Alembic migrations. This is for dev/test only.
    """
    from metricshub.db.models import Base

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Clean shutdown: dispose of all connections."""
    await async_engine.dispose()
