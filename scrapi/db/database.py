"""
Database connection and session management.

The engine is created once per process by the application context and
passed around explicitly; nothing here holds module-level connection state.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from scrapi.core.config import Settings
from scrapi.core.exceptions import ConnectivityError

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class DatabaseError(Exception):
    """Custom database error for better error handling"""
    def __init__(self, message: str, original_error: Exception | None = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the staging datastore."""
    url = str(settings.database_url)
    engine = create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    logger.info("Database engine created", pool_size=settings.database_pool_size)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def is_connection_error(error: BaseException) -> bool:
    """True for failures to reach the datastore rather than failures of a statement."""
    if isinstance(error, (OperationalError, InterfaceError, PoolTimeoutError, OSError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


@asynccontextmanager
async def get_db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for getting a database session outside of a request scope.

    Connection failures (refused, dropped, pool exhausted) are re-raised as a
    retryable ConnectivityError; other SQLAlchemy errors are rolled back and
    re-raised as DatabaseError.
    """
    session = session_maker()
    try:
        yield session
    except (SQLAlchemyError, OSError) as e:
        if is_connection_error(e):
            logger.warning("Database unreachable", error=str(e), error_type=type(e).__name__)
            raise ConnectivityError(f"Database unreachable: {e}", {"error_type": type(e).__name__}) from e
        logger.error("Database error in session", error=str(e))
        await session.rollback()
        raise DatabaseError(f"Database operation failed: {e}", original_error=e) from e
    finally:
        await session.close()


async def init_db(engine: AsyncEngine) -> None:
    """Create the staging table if it does not exist yet.

    The serps/serp_ads tables belong to the downstream trigger pipeline and are
    never created from here.
    """
    from scrapi.db.models import StagingSerpModel

    async with engine.begin() as conn:
        await conn.run_sync(
            lambda sync_conn: Base.metadata.create_all(
                sync_conn, tables=[StagingSerpModel.__table__], checkfirst=True
            )
        )
    logger.info("Database tables initialized")


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
