"""
Async SQLAlchemy engine and sessions.

Request handlers get a session from get_db; the retry worker and the realtime
collaborators open their own through async_session_factory.
expire_on_commit=False: the dispatcher commits mid-flow and keeps reading loaded rows.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from bookon_relay.config import get_settings
        settings = get_settings()
        options = {"pool_pre_ping": True}
        # SQLite (local runs) has no connection pool to size
        if not settings.database_url.startswith("sqlite"):
            options.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
            )
        _engine = create_async_engine(settings.database_url, **options)
        logger.info("Database engine created for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_sessionmaker() -> async_sessionmaker:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """A new session for work outside a request (retry worker, websocket auth)."""
    return get_sessionmaker()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency. Commits whatever the endpoint left pending; ingestion
    and the dispatcher commit their own units of work before returning.
    """
    async with get_sessionmaker()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Request session rolled back: %s", str(e))
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessionmaker = None
