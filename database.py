"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the DealPact Escrow Bot.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing applies to PostgreSQL only"""
    if database_url.startswith("postgresql+asyncpg://"):
        return create_async_engine(
            database_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=echo,
            connect_args={
                "server_settings": {
                    "application_name": "dealpact_bot",  # For monitoring in pg_stat_activity
                },
                "timeout": 10,
                "command_timeout": 30,
            }
        )
    return create_async_engine(database_url, echo=echo)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # CRITICAL: detached deals are read after commit
    )


async_engine = build_async_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)
AsyncSessionLocal = build_session_factory(async_engine)


@asynccontextmanager
async def async_managed_session(session_factory: async_sessionmaker = None):
    """Async context manager for database sessions"""
    session = (session_factory or AsyncSessionLocal)()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or async_engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
    try:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False
    logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
    return True


async def test_connection(engine: AsyncEngine = None) -> bool:
    """Test database connection"""
    try:
        async with (engine or async_engine).connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
