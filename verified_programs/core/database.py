"""
Database connection module for PostgreSQL.
Provides async database connections and session management.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from verified_programs.core.config import settings

logger = logging.getLogger(__name__)

if not settings.database_url:
    raise ValueError("Database URL not configured")

# Async engine for all store operations
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.DEBUG,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=3600,
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# Base class for models
class Base(DeclarativeBase):
    pass


async def test_db_connection() -> bool:
    """Test database connection."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False


async def close_db():
    """Close database connections."""
    await async_engine.dispose()
    logger.info("Database connections closed")
