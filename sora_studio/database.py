from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from sora_studio.errors import StoreError
from sora_studio.utils.logger import logger

# Base class for models
Base = declarative_base()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured database"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            # One shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        return create_async_engine(database_url, echo=echo, future=True, **kwargs)

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,  # Detect and recycle stale/broken connections
        pool_recycle=300,  # Recycle connections every 5 minutes
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by the store, ledger and event log"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all database tables"""
    # Import models to register them with Base
    from sora_studio.models import video, quota, video_event  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def ping_db(engine: AsyncEngine) -> None:
    """Raises if the database is unreachable"""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker, action: str) -> AsyncIterator[AsyncSession]:
    """
    One session, one transaction. Commits on success, rolls back on error,
    and surfaces driver failures as StoreError.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield session
    except SQLAlchemyError as exc:
        logger.error(f"[db] Failed to {action}: {exc}", extra={"error_type": type(exc).__name__})
        raise StoreError(f"Failed to {action}") from exc
