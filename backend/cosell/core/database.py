"""Async database layer for CoSell Intel.

Two engines:
  - the application database (PostgreSQL, asyncpg) holding scan sessions and
    detected opportunities. All public functions degrade gracefully if
    DATABASE_URL is not set and the app runs in in-memory mode.
  - the Fabric warehouse, read-only, used for partner referral lookups.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from cosell.core.config import get_settings

logger = logging.getLogger(__name__)

_engine = None
_session_factory: Optional[async_sessionmaker] = None
_warehouse_engine: Optional[AsyncEngine] = None


class Base(DeclarativeBase):
    pass


def db_enabled() -> bool:
    """Return True if DATABASE_URL is configured."""
    return bool(get_settings().database_url)


def _make_engine():
    settings = get_settings()
    url = settings.database_url
    # Normalise driver prefix; hosted Postgres connection strings often start with postgres://
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://"):]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return create_async_engine(
        url,
        echo=settings.debug,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


async def init_db() -> bool:
    """
    Create all tables (if they don't exist) and initialise the session factory.

    Returns True if the database is available, False if DATABASE_URL is not set
    or the connection failed. The app continues in in-memory mode on False.
    """
    if not db_enabled():
        logger.info("DATABASE_URL not set, running in in-memory mode")
        return False

    global _engine, _session_factory
    try:
        _engine = _make_engine()
        # Import so ORM models are registered with Base.metadata
        import cosell.models.db_models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("Database initialised successfully")
        return True
    except Exception as e:
        logger.error(f"Database init failed, continuing in-memory: {e}")
        _engine = None
        _session_factory = None
        return False


async def get_db_session() -> Optional[AsyncSession]:
    """
    Return a new AsyncSession, or None if DB is not available.
    Caller is responsible for closing the session.
    """
    if _session_factory is None:
        return None
    return _session_factory()


def get_warehouse_engine() -> Optional[AsyncEngine]:
    """Lazily create the Fabric warehouse engine; None if FABRIC_DATABASE_URL is unset."""
    global _warehouse_engine
    settings = get_settings()
    if not settings.fabric_database_url:
        return None
    if _warehouse_engine is None:
        _warehouse_engine = create_async_engine(
            settings.fabric_database_url,
            echo=settings.debug,
            pool_pre_ping=True,
        )
    return _warehouse_engine


async def close_db() -> None:
    """Dispose the engines on shutdown."""
    global _engine, _warehouse_engine
    if _engine:
        await _engine.dispose()
        _engine = None
    if _warehouse_engine:
        await _warehouse_engine.dispose()
        _warehouse_engine = None
