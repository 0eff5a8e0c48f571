# dispatch_engine/infra/db_resilience_async.py
"""
Retry policy for the Postgres dispatch store.

Only failures of the database itself are retried (lost connections, pool
exhaustion, deadlocks, serialization failures).  A lost compare-and-swap
is a ``StaleVersionError`` raised by the store, never a driver error, so it
always reaches the engine untouched.
"""
from __future__ import annotations
from contextlib import asynccontextmanager

import asyncpg
from dispatch_engine.infra.db_async import get_pool
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.retry import retry_async, with_retry

logger = get_logger(__name__)

TRANSIENT_PG_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    asyncpg.SerializationError,
)

# asyncpg surfaces some connection drops as a bare PostgresError / InterfaceError
_TRANSIENT_MESSAGES = ("connection", "timeout", "closed", "network", "deadlock")


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, TRANSIENT_PG_ERRORS):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return True
    if isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError)):
        text = str(exc).lower()
        return any(fragment in text for fragment in _TRANSIENT_MESSAGES)
    return False


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    ``with_retry`` bound to ``is_transient_error``, for read-only queries.

        @retry_on_transient_error(max_retries=2)
        async def fetch(self, key, scope_type, scope_id): ...

    Writes are not decorated: a commit whose acknowledgement was lost must
    not be replayed against a bumped version.
    """
    return with_retry(
        max_retries=max_retries,
        initial_delay=initial_delay,
        backoff_factor=backoff_factor,
        max_delay=max_delay,
        retry_on=is_transient_error,
    )


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """``db_conn`` whose pool acquisition (only) is retried."""
    pool = await get_pool()
    conn = await retry_async(
        pool.acquire,
        max_retries=3,
        initial_delay=0.1,
        retry_on=is_transient_error,
        operation="acquire db connection",
    )
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
