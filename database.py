"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the TradePort deal and exchange core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _to_async_url(database_url: str) -> str:
    """Map plain driver URLs onto their async drivers"""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        database_url = database_url.replace("sslmode=require", "ssl=require")
        database_url = database_url.replace("sslmode=prefer", "ssl=prefer")
        database_url = database_url.replace("sslmode=disable", "ssl=disable")
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _build_engine(database_url: str) -> AsyncEngine:
    async_url = _to_async_url(database_url)

    if async_url.startswith("sqlite"):
        # SQLite serializes writers itself; give concurrent writers time to queue
        return create_async_engine(
            async_url,
            echo=Config.DATABASE_ECHO,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        async_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=Config.DATABASE_ECHO,
        connect_args={
            "server_settings": {
                "application_name": "tradeport_core",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,
            "command_timeout": 30,
        }
    )


async_engine: AsyncEngine = _build_engine(Config.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False  # Returned entities stay readable after the session closes
)


def configure_database(database_url: str) -> AsyncEngine:
    """
    Point the module-level engine and session factory at another database.

    Used by tests and tooling; services always reach the database through
    async_managed_session(), so rebinding here redirects every service.
    """
    global async_engine
    async_engine = _build_engine(database_url)
    AsyncSessionLocal.configure(bind=async_engine)
    logger.info(f"🔧 Database configured: {async_engine.url.render_as_string(hide_password=True)}")
    return async_engine


@asynccontextmanager
async def async_managed_session():
    """Async context manager for database sessions"""
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    engine = engine or async_engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


async def drop_tables(engine: Optional[AsyncEngine] = None):
    """Drop every table (tests and local resets only)"""
    engine = engine or async_engine
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
    logger.info("🧹 Database tables dropped")


async def test_connection() -> bool:
    """Test database connection"""
    try:
        async with async_engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


async def dispose_engine():
    await async_engine.dispose()
    logger.info("✅ Database connections cleaned up")
