"""
Database Configuration and Session Management
============================================

This module provides the async database engine, session factory, and table creation
functionality for the payment reconciliation engine.
"""

import logging
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_async_database_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL for the asyncpg driver"""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        for mode in ("require", "prefer", "disable"):
            url = url.replace(f"sslmode={mode}", f"ssl={mode}")
    return url


def build_async_engine(url: str):
    async_url = build_async_database_url(url)
    if async_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        return create_async_engine(
            async_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_async_engine(
        async_url,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
        connect_args={
            "server_settings": {"application_name": "payment_reconciliation_engine"},
            "timeout": 10,
            "command_timeout": 30,
        },
    )


async_engine = build_async_engine(Config.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False  # Rows are read after commit by background jobs
)


@asynccontextmanager
async def get_async_session():
    """
    Async context manager for database sessions.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(Payment).where(...))
            payment = result.scalar_one_or_none()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables():
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables ready")


async def dispose_engine():
    await async_engine.dispose()
    logger.info("🔌 Database engine disposed")
