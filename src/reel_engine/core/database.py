"""Database configuration and session management."""

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from reel_engine.core.config import settings

logger = logging.getLogger(__name__)


def create_engine(url: str) -> AsyncEngine:
    """Create an async engine for the durable job record store."""
    return create_async_engine(
        url,
        echo=settings.DEBUG,
        future=True,
    )


def create_session_maker(db_engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


async def init_db(db_engine: AsyncEngine) -> None:
    """Initialize the database, creating tables if needed."""
    from reel_engine.models import job, subject  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created/verified")


async def close_db(db_engine: AsyncEngine) -> None:
    """Close database connections."""
    await db_engine.dispose()
    logger.info("Database connections closed")
