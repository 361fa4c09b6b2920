"""
Database Connection Management

One async engine per process and one session per unit of work. A job run or a
micro-batch flush is a unit of work: it commits as a whole or rolls back as a
whole.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Union

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from cityatlas_etl.config import get_settings
from cityatlas_etl.config.settings import DatabaseSettings
from .models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the pipeline and the test suite alike"""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def unit_of_work(sessions: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session from ``sessions``; commit on exit, roll back on error"""
    session = sessions()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.warning("Rolling back unit of work", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_database(database: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """
    Create the process-wide engine and verify the warehouse is reachable.

    Connections are not pooled (NullPool): jobs run minutes apart and flushes
    every few seconds, so a pool would mostly hold idle asyncpg connections.
    Calling this twice returns the existing engine.
    """
    global _engine, _sessions

    if _engine is not None:
        return _engine

    database = database or get_settings().database
    engine = create_async_engine(database.async_url, echo=database.echo, poolclass=NullPool)

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Warehouse unreachable", host=database.host, database=database.db, error=str(e))
        await engine.dispose()
        raise

    _engine, _sessions = engine, build_session_factory(engine)
    logger.info("Warehouse connected", host=database.host, database=database.db)
    return _engine


async def close_database() -> None:
    global _engine, _sessions

    if _engine is None:
        return
    await _engine.dispose()
    _engine, _sessions = None, None
    logger.info("Warehouse connection closed")


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


def get_db():
    """
    Transactional session on the process-wide engine.

    Example:
        async with get_db() as db:
            repository = WarehouseRepository(db)

    Raises:
        RuntimeError: If init_database() has not run
    """
    if _sessions is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return unit_of_work(_sessions)


async def create_schema(engine: Optional[AsyncEngine] = None) -> None:
    """Create missing source and warehouse tables (existing tables are left alone)"""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Warehouse schema ensured", tables=len(Base.metadata.tables))


async def check_database_health() -> Dict[str, Union[str, float]]:
    """Round-trip a ``SELECT 1`` and report its latency"""
    start = time.perf_counter()
    try:
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}
