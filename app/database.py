"""
Line Metrics Engine - Database Layer

This module handles database connections and read access for the Line
Metrics Engine. It uses SQLAlchemy with async support against the existing
plant telemetry database (tags, tag values, jobs, programs, recipes and
alarm aggregations). The engine only reads; nothing here writes.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
import structlog

from app.config import settings
from app.utils.exceptions import handle_database_exception

logger = structlog.get_logger()


# Database engine
async_engine = None
async_session_factory = None


async def init_db() -> None:
    """Initialize database connections."""
    global async_engine, async_session_factory

    try:
        async_engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=settings.DATABASE_ECHO,
            pool_pre_ping=True
        )

        async_session_factory = async_sessionmaker(
            async_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        await test_database_connection()

        logger.info("Database initialized successfully")

    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise


async def close_db() -> None:
    """Close database connections."""
    global async_engine, async_session_factory

    try:
        if async_engine:
            await async_engine.dispose()
            logger.info("Async database engine disposed")

        async_engine = None
        async_session_factory = None

    except Exception as e:
        logger.error("Error closing database connections", error=str(e))


async def test_database_connection() -> None:
    """Test database connectivity."""
    try:
        async with async_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()
        logger.info("Database connection test successful")
    except Exception as e:
        logger.error("Database connection test failed", error=str(e))
        raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a read session with automatic cleanup."""
    if not async_session_factory:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# Database utility functions
async def execute_query(query: str, params: Optional[dict] = None) -> list:
    """Execute a raw SQL query and return its rows as mappings."""
    try:
        async with get_db_session() as session:
            result = await session.execute(text(query), params or {})
            return list(result.mappings().all())
    except Exception as e:
        logger.error("Database query execution failed",
                    query=query[:100], params=params, error=str(e))
        raise handle_database_exception(e) from e


async def execute_scalar(query: str, params: Optional[dict] = None):
    """Execute a raw SQL query and return a single scalar result."""
    try:
        async with get_db_session() as session:
            result = await session.execute(text(query), params or {})
            return result.scalar()
    except Exception as e:
        logger.error("Database scalar execution failed",
                    query=query[:100], params=params, error=str(e))
        raise handle_database_exception(e) from e


# Database health check
async def check_database_health() -> dict:
    """Check database health and return status information."""
    try:
        await test_database_connection()

        sample_count_query = """
        SELECT count(*) FROM "TagValues"
        WHERE "createdAt" > NOW() - INTERVAL '5 minutes'
        """
        recent_samples = await execute_scalar(sample_count_query)

        return {
            "status": "healthy",
            "recent_samples": recent_samples,
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW
        }

    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e)
        }
