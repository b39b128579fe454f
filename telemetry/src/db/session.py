"""
Async database engine and session factory.

Uses the SQLAlchemy 2.x async engine. The URL comes from
``EngineSettings.database_url``: ``postgresql+asyncpg://`` in production,
``sqlite+aiosqlite://`` for local runs and tests. Engines and factories are
constructed explicitly and passed to the components that need them.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from telemetry.src.db.models import Base


def _is_memory_sqlite(database_url: str) -> bool:
    if not database_url.startswith("sqlite"):
        return False
    _, _, path = database_url.partition("://")
    return ":memory:" in path or path in ("", "/")


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine for *database_url*.

    In-memory SQLite URLs share one connection so every session sees the
    same database.

    Args:
        database_url: Async SQLAlchemy URL.

    Returns:
        AsyncEngine: Configured async engine.
    """
    if _is_memory_sqlite(database_url):
        return create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    Returns:
        async_sessionmaker: Factory for creating AsyncSession instances.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet.

    Schema migrations are owned by the dashboard deployment; this only
    bootstraps empty databases (local runs and tests).
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
