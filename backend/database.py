"""Database setup and async session management."""

import logging
from collections.abc import AsyncIterator
from functools import lru_cache

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _attach_sqlite_pragmas(engine: AsyncEngine) -> None:
    """Register a ``connect`` listener that tunes every SQLite connection.

    WAL lets the background sweep read while a user-triggered refresh
    writes; the busy timeout queues concurrent writers instead of failing.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine_for_url(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, applying SQLite connection pragmas when needed.

    Args:
        database_url: SQLAlchemy URL using an async driver
            (e.g. ``sqlite+aiosqlite:///./account_sync.db``).
        **kwargs: Extra keyword arguments for ``create_async_engine``.

    Returns:
        The configured AsyncEngine.
    """
    engine = create_async_engine(database_url, echo=False, **kwargs)
    if database_url.startswith("sqlite"):
        _attach_sqlite_pragmas(engine)
    return engine


@lru_cache
def get_engine() -> AsyncEngine:
    """Get or create the database engine (cached)."""
    return create_engine_for_url(settings.DATABASE_URL)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine``.

    Objects stay usable after commit so results can be serialized once
    the unit of work is closed.
    """
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get a session factory bound to the application engine."""
    return make_session_factory(get_engine())


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create any missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ensured")


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency that provides a database session.

    Transaction conventions:
    - Default: services ``flush()``, API layer ``commit()``
    - The sync engine services open their own sessions from the factory
      and commit per connection, since connections are processed
      concurrently.
    """
    async with get_session_factory()() as db:
        try:
            yield db
        except Exception:
            await db.rollback()
            raise
