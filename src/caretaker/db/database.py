"""Database connection and session management.

Transaction Model
-----------------
Each API request gets a single database session via get_session(). The session
wraps the entire request in a transaction that:
- Commits after the endpoint returns successfully
- Rolls back on any exception

Multi-step writes (approve a proposal: write a snapshot, resolve drift, update
the proposal) run inside session.begin_nested() so that a failure at any step
leaves no partial state behind.

Database Support
----------------
- **PostgreSQL**: production target (asyncpg driver)
- **SQLite**: supported for tests via aiosqlite (DATABASE_URL=sqlite+aiosqlite:///:memory:)
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from caretaker.config import settings
from caretaker.db.models import Base

# Lazy engine initialization to avoid creating connections at import time
_engine: AsyncEngine | None = None
_async_session: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        options: dict[str, Any] = {"echo": False}
        if not settings.database_url.startswith("sqlite"):
            options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
            )
        _engine = create_async_engine(settings.database_url, **options)
    return _engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session maker."""
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _async_session


async def dispose_engine() -> None:
    """Dispose of the database engine and clean up connections."""
    global _engine, _async_session
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session = None


async def init_db() -> None:
    """Create all tables when auto_create_tables is enabled.

    Production deployments should disable this and run Alembic migrations.
    """
    if not settings.auto_create_tables:
        return
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session for a single request.

    The session wraps the request in a transaction:
    - Commits on successful completion
    - Rolls back on any exception

    For multi-step atomic operations, use session.begin_nested() for savepoints.
    """
    async_session = get_async_session_maker()
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
