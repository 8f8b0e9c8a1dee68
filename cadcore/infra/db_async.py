# cadcore/infra/db_async.py
"""
asyncpg connection pool for the postgres persistence backend.

The pool is process-wide: init_pool() on startup, close_pool() on
shutdown (both wired into the FastAPI lifespan).
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from cadcore.config import settings
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_statement_timeout_ms / 1000,
        server_settings={
            "application_name": settings.service_name,
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
        },
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get a connection from the pool.

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT ... WHERE entity_id = $1", entity_id)

    Args:
        autocommit: If False the block runs in one transaction that is
            committed on success and rolled back on any exception.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await _pool.release(conn)


def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (health checks, migrations)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool


def is_pool_initialized() -> bool:
    return _pool is not None
