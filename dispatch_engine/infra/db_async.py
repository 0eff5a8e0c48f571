# dispatch_engine/infra/db_async.py
"""
Process-wide asyncpg pool for the dispatch store and policy source.

The pool is created in the app lifespan (``init_pool``) only when
DATABASE_URL is set; without it the engine runs on the in-memory store and
nothing here is touched.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from dispatch_engine.config import settings
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool(dsn: Optional[str] = None) -> None:
    """Create the pool (no-op when it already exists)."""
    global _pool
    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=dsn or settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=30,
        server_settings={"application_name": settings.service_name},
    )
    logger.info(f"Connection pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("Connection pool closed")


def pool_status() -> dict:
    """Size and idle connections, for the readiness check."""
    if _pool is None:
        return {"ready": False}
    return {"ready": True, "size": _pool.get_size(), "idle": _pool.get_idle_size()}


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

        async with db_conn(autocommit=False) as conn:
            await conn.execute("UPDATE dispatch_jobs SET ...")

    With ``autocommit=False`` the block is one transaction, rolled back if
    it raises.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
