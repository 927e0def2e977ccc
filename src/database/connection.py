"""
Async database engine and session management.

Request handlers get a session through the ``get_db`` dependency. Event
subscribers and Celery tasks run outside the request and open their own
with ``get_session``, so their notification bookkeeping commits
independently of the transaction that triggered them.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _convert_database_url_to_async(url: str) -> str:
    """Use the asyncpg driver for plain ``postgresql://`` URLs."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def get_engine() -> AsyncEngine:
    """
    Get or create the process-wide async engine.

    The test environment uses NullPool so that every test's event loop gets
    fresh connections.

    Raises:
        RuntimeError: If the engine cannot be created
    """
    global _engine

    if _engine is not None:
        return _engine

    if settings.is_test:
        pool_options: dict = {"poolclass": NullPool}
    else:
        pool_options = {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    try:
        _engine = create_async_engine(
            _convert_database_url_to_async(settings.database_url),
            echo=settings.debug,
            connect_args={
                "server_settings": {"application_name": settings.app_name},
                "command_timeout": 60,
                "timeout": 10,
            },
            **pool_options,
        )
    except (SQLAlchemyError, ValueError) as e:
        logger.error(
            "Failed to create database engine",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise RuntimeError(f"Database engine initialization failed: {e}") from e

    logger.info(
        "Database engine created",
        environment=settings.environment,
        pooled=not settings.is_test,
    )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the global engine."""
    global _session_factory

    if _session_factory is None:
        # Objects stay readable after commit; events are published post-commit.
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session that commits on success and rolls back on error.
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.warning(
            "Database session rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_session() as session:
        yield session


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Run ``SELECT 1``, retrying connection failures with exponential backoff.

    Returns:
        True if the database answered, False otherwise
    """
    for attempt in range(max_retries):
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except DBAPIError as e:
            logger.warning(
                "Database health check failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay * (2**attempt))
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(
                "Database health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    return False


async def close_database_connections() -> None:
    """Dispose of the engine. Called on application and task shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return

    try:
        await _engine.dispose()
        logger.info("Database connections closed")
    finally:
        _engine = None
        _session_factory = None
