"""Shared store engine and connection management."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from brokerlease.app.config import DatabaseConfig, get_settings
from brokerlease.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the async engine for the shared store.

    SQLite URLs use SQLAlchemy's default pool; pool sizing only applies to
    server databases.
    """
    kwargs: dict = {"echo": config.echo, "pool_pre_ping": True}
    if not config.url.startswith("sqlite"):
        kwargs.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle,
        )
    return create_async_engine(config.url, **kwargs)


async def init_db() -> AsyncEngine:
    global _engine

    settings = get_settings()
    _engine = create_engine(settings.database)

    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Shared store connected",
            extra={
                "event": LogEvent.DB_CONNECTED,
                "dialect": _engine.dialect.name,
                "pool_size": settings.database.pool_size,
            },
        )
    except Exception as e:
        logger.error(
            "Shared store connection failed",
            extra={
                "event": LogEvent.DB_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise
    return _engine


async def close_db() -> None:
    global _engine

    if _engine:
        await _engine.dispose()
        _engine = None


@asynccontextmanager
async def acquire_connection(engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    """Check a connection out of the pool and always give it back.

    A failure while closing is logged and swallowed so it never masks the
    error that ended the block.
    """
    conn = await engine.connect()
    try:
        yield conn
    finally:
        await release_connection(conn)


async def release_connection(conn: AsyncConnection) -> None:
    """Return conn to the pool, logging instead of raising on failure."""
    try:
        await conn.close()
    except Exception as e:
        logger.debug("Error while closing connection: %s", e, exc_info=True)
