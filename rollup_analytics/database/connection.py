"""
Database Connection Management

One process-wide AsyncEngine serves the metadata store, the schema cache
and the query executor. Pooling is disabled; refresh tickets hold their
connection for as long as the row lock lives.
"""

import time
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from rollup_analytics.config import get_settings
from rollup_analytics.database.models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None


async def init_database(url: Optional[str] = None, ensure_catalog: bool = False) -> AsyncEngine:
    """
    Create the shared engine, or return it if it already exists.

    Args:
        url: Async URL; defaults to the configured PostgreSQL URL
        ensure_catalog: Also create the rollup catalog tables

    Returns:
        AsyncEngine: The shared engine
    """
    global _engine

    if _engine is not None:
        logger.warning("Database already initialized", dialect=_engine.dialect.name)
        return _engine

    settings = get_settings()
    engine = create_async_engine(
        url or settings.database.async_url,
        echo=settings.database.echo,
        pool_pre_ping=True,
        poolclass=NullPool,
    )

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if ensure_catalog:
                await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await engine.dispose()
        raise

    _engine = engine
    logger.info("Database connection established", dialect=engine.dialect.name, catalog=ensure_catalog)
    return _engine


async def close_database() -> None:
    global _engine

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    logger.info("Database engine disposed")


def get_engine() -> AsyncEngine:
    """
    Get the shared engine.

    Raises:
        RuntimeError: If init_database() has not run
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


async def check_database_health() -> Dict[str, Any]:
    """
    Check the database and the rollup catalog.

    Returns:
        "healthy" with latency when the catalog tables exist, "degraded"
        when the database answers but the catalog is missing, otherwise
        "unhealthy" with the error
    """
    try:
        started = time.perf_counter()
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return {"status": "unhealthy", "error": str(e)}

    missing = sorted(set(Base.metadata.tables) - tables)
    return {
        "status": "degraded" if missing else "healthy",
        "dialect": get_engine().dialect.name,
        "latency_ms": latency_ms,
        "missing_tables": missing,
    }
