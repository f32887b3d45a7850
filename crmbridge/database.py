"""
Database engine and sessions for the rule, settings, metadata, marker and
system log tables.

The engine is created lazily on first use so importing the models (tests,
migrations) never needs a reachable database. DatabaseStorage opens one short
session per operation through async_session_factory(); get_db serves the
readiness check. Loaded rows stay readable after commit
(expire_on_commit=False).
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from crmbridge.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            echo=settings.app_env == "development" and settings.log_level.upper() == "DEBUG",
        )
        logger.info("Database engine created (pool_size=%d)", settings.database_pool_size)
    return _engine


def _get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factory


def async_session_factory() -> AsyncSession:
    """New session for storage operations; use as `async with`."""
    return _get_session_factory()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency. Read-only callers: nothing is committed."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception as e:
            logger.debug("Rolling back request session: %s", str(e))
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections on shutdown. The next use recreates the engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None
