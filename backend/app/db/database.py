"""
Database connection and session management.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.core.exceptions import GatewayException

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


def _engine_options(url: str) -> dict[str, Any]:
    """Pool and driver options; the asyncpg tuning only applies to PostgreSQL."""
    if url.startswith("sqlite"):
        return {"echo": settings.debug}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "echo": settings.debug,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {
            "command_timeout": 60,
            "server_settings": {
                "application_name": settings.app_name.lower().replace(" ", "_"),
                "jit": "off",
            },
        },
    }


try:
    engine = create_async_engine(
        settings.database_url,
        **_engine_options(settings.database_url),
    )
    logger.info("database_engine_created")
except Exception as e:
    logger.error("database_engine_failed", error=str(e))
    raise

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session with proper error handling."""
    session = async_session_maker()
    try:
        yield session
    except (GatewayException, HTTPException):
        await session.rollback()
        raise  # Let the app-level exception handlers shape the response
    except OperationalError as e:
        logger.error("database_operational_error", error=str(e))
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed. Please try again later."
        ) from e
    except SQLAlchemyError as e:
        logger.error("database_error", error=str(e))
        await session.rollback()
        raise DatabaseError(f"Database operation failed: {e}", original_error=e) from e
    finally:
        await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory.

    Used where work must run in its own short-lived session, such as metric
    writes that have to succeed even when the request transaction failed.
    """
    return async_session_maker


@asynccontextmanager
async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for getting a database session outside FastAPI dependencies.
    """
    session = (session_factory or async_session_maker)()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error("database_session_error", error=str(e))
        await session.rollback()
        raise DatabaseError(f"Database operation failed: {e}", original_error=e) from e
    finally:
        await session.close()


async def init_db() -> None:
    """Create tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.create_all(sync_conn, checkfirst=True))
    logger.info("database_tables_initialized")


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()


async def check_database_health(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Check database connectivity and health"""
    try:
        async with (session_factory or async_session_maker)() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return False
