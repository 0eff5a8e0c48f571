# dispatch_engine/infra/http_client.py
"""
Shared HTTP client sessions and JSON call helper for external services.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **directory** – candidate queries            (total=10 s, connect=3 s, pool limit=20)
- **gateway**   – notifications, event relay   (total=15 s, connect=5 s, pool limit=20)

Error classification (ServiceCallError.retryable):
- 429 and 5xx          → retryable
- network / timeout    → retryable
- other 4xx            → NOT retryable (request is wrong, retrying is futile)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_directory_session() -> aiohttp.ClientSession:
    """Session for professional directory queries."""
    return _get_or_create(
        "directory",
        aiohttp.ClientTimeout(total=10, connect=3),
        limit=20,
    )


def get_gateway_session() -> aiohttp.ClientSession:
    """Session for the notification gateway and the event relay."""
    return _get_or_create(
        "gateway",
        aiohttp.ClientTimeout(total=15, connect=5),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)


class ServiceCallError(Exception):
    """Error calling an external service.

    Attributes:
        service:   Short service name for logs/metrics.
        status:    HTTP status code (0 for connection-level errors).
        retryable: Whether the caller should retry.
    """

    def __init__(self, service: str, status: int, message: str, *, retryable: bool):
        self.service = service
        self.status = status
        self.retryable = retryable
        super().__init__(f"{service} error {status}: {message}")


def auth_headers(token: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def request_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    service: str,
    token: str | None = None,
    json_body: Any = None,
    params: dict[str, Any] | None = None,
) -> Any:
    """
    Make one JSON request and return the decoded body (None for 204).

    Raises:
        ServiceCallError: on HTTP errors and connection failures
    """
    try:
        async with session.request(
            method,
            url,
            json=json_body,
            params=params,
            headers=auth_headers(token),
        ) as resp:
            if resp.status == 204:
                return None
            if resp.status >= 400:
                text = (await resp.text())[:200]
                retryable = resp.status == 429 or resp.status >= 500
                raise ServiceCallError(service, resp.status, text, retryable=retryable)
            return await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ServiceCallError(service, 0, f"{e.__class__.__name__}: {e}", retryable=True) from e
