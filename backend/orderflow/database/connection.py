"""
PostgreSQL engine and session lifecycle.

One async engine and session factory are created lazily per process. The row
store opens a short session per call through ``get_session``; the readiness
probe uses ``check_database_health``; the application lifespan disposes the
engine on shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _pool_options(settings: Settings) -> dict[str, Any]:
    # Pooled connections are bound to the loop that opened them; tests
    # create a loop per test.
    if settings.is_test:
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the asyncpg engine for the configured database."""
    settings = settings or get_settings()
    engine = create_async_engine(
        settings.async_database_url,
        echo=settings.debug,
        connect_args={
            "server_settings": {"application_name": settings.app_name},
            "command_timeout": 60,
            "timeout": 10,
        },
        **_pool_options(settings),
    )
    logger.info(
        "Database engine created",
        pooled=not settings.is_test,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    return engine


def get_engine() -> AsyncEngine:
    """
    Return the process engine, creating it on first use.

    Raises:
        RuntimeError: If the engine cannot be created
    """
    global _engine

    if _engine is None:
        try:
            _engine = create_engine()
        except (SQLAlchemyError, ValueError, ImportError) as e:
            logger.error(
                "Failed to create database engine",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Database engine initialization failed: {e}") from e
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
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
    Open a session for one row store call.

    Commits when the block exits normally; rolls back and re-raises when it
    does not. Every row store call is its own transaction.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except BaseException as e:
            await session.rollback()
            logger.warning(
                "Database session rolled back",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Run ``SELECT 1`` with exponential backoff between attempts.

    Returns:
        True once a query succeeds, False after ``max_retries`` failures
    """
    for attempt in range(1, max_retries + 1):
        try:
            async with get_engine().connect() as connection:
                await connection.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, RuntimeError, OSError) as e:
            logger.warning(
                "Database health check failed",
                attempt=attempt,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries:
                await asyncio.sleep(retry_delay * 2 ** (attempt - 1))
    return False


async def close_database_connections() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None
