"""
Database session management.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Type, TypeVar

from fastapi import Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from matkassen.core.config import settings
from matkassen.db.base import Base

logger = logging.getLogger("matkassen.db")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine with pool settings suited to the backend.

    SQLite (aiosqlite) does not take the queue pool arguments used for
    PostgreSQL.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, connect_args={"timeout": 30})

    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to ``bind``."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DEBUG)

# Create async session factory
async_session_factory = create_session_factory(engine)


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Automatically handles commit/rollback and ensures session is closed.

    Usage:
        async with session_scope() as session:
            # Use session here
    """
    session = (session_factory or async_session_factory)()
    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Database session rolled back due to: {str(e)}")
        raise
    finally:
        await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory used by services."""
    return async_session_factory


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session for FastAPI endpoints via dependency injection.
    """
    async with session_scope(session_factory) as session:
        yield session


# Create a type variable for repository types
T = TypeVar('T')


@asynccontextmanager
async def get_repository_context(
    repo_type: Type[T],
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncGenerator[T, None]:
    """
    Get a repository with managed session lifecycle.

    Usage:
        async with get_repository_context(SmsRepository) as repo:
            # Use repo here
    """
    async with session_scope(session_factory) as session:
        yield repo_type(session)


async def create_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def initialize_database() -> None:
    """
    Initialize the database connection pool and run any startup tasks.

    This should be called during application startup.
    """
    logger.info("Initializing database connection pool")

    if settings.DB_CREATE_TABLES:
        await create_tables()
        logger.info("Database tables ensured")

    async with session_scope() as session:
        try:
            await session.execute(text("SELECT 1"))
            logger.info("Database connection successful")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    logger.info("Database initialization complete")


async def close_database_connections() -> None:
    """
    Close all database connections in the pool.

    This should be called during application shutdown.
    """
    logger.info("Closing database connections")
    await engine.dispose()
    logger.info("Database connections closed")
