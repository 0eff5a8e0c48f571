# dispatch_engine/infra/policy_cache.py
"""
Read-through policy cache with scope fallback.

``CachedPolicyResolver.resolve(key, scope_chain)`` returns the value stored
at the most specific scope that has a row for ``key``
(SERVICE_CATEGORY > ORGANIZATION > REGION > GLOBAL), then the configured
default.  Each ``(key, scope_type, scope_id)`` lookup is cached for
``ttl_seconds``, including "no row" answers.

The resolver is an explicit object handed to the engine; there is no
module-level instance.

When the source is unreachable after retries, or fails with an error that
is not retried, the last value seen for that lookup is served even if its
TTL has run out.  With nothing cached,
``ConfigurationError`` is raised.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from dispatch_engine.core.dispatch.domain import ScopeType
from dispatch_engine.core.dispatch.errors import ConfigurationError
from dispatch_engine.core.dispatch.policy import scope_chain_repr
from dispatch_engine.core.dispatch.ports import PolicySource
from dispatch_engine.infra.logging_config import get_logger
from dispatch_engine.infra.metrics import inc_counter
from dispatch_engine.infra.retry import retry_async

logger = get_logger(__name__)

CacheKey = tuple[str, ScopeType, Optional[str]]


@dataclass
class _Entry:
    found: bool
    value: Any
    expires_at: float


class CachedPolicyResolver:
    def __init__(
        self,
        source: PolicySource,
        *,
        ttl_seconds: float = 300.0,
        defaults: Mapping[str, Any] | None = None,
        max_retries: int = 3,
        retry_base_delay: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._source = source
        self._ttl = ttl_seconds
        self._defaults = dict(defaults or {})
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[CacheKey, _Entry] = {}

    async def resolve(
        self,
        key: str,
        scope_chain: Sequence[tuple[ScopeType, Optional[str]]],
    ) -> Any:
        for scope_type, scope_id in reversed(list(scope_chain)):
            entry = await self._lookup(key, scope_type, scope_id)
            if entry.found:
                return entry.value

        if key in self._defaults:
            logger.debug(f"Policy {key}: no row for {scope_chain_repr(scope_chain)}, using default")
            return self._defaults[key]

        raise ConfigurationError(f"No policy value for '{key}'")

    def invalidate(self, key: str | None = None) -> int:
        """Drop cached lookups for ``key`` (all keys when None). Returns count dropped."""
        if key is None:
            dropped = len(self._entries)
            self._entries.clear()
        else:
            stale = [k for k in self._entries if k[0] == key]
            for k in stale:
                del self._entries[k]
            dropped = len(stale)
        logger.info(f"Policy cache invalidated: key={key or '*'} entries={dropped}")
        return dropped

    def cached_keys(self) -> list[CacheKey]:
        now = self._clock()
        return [k for k, e in self._entries.items() if e.expires_at > now]

    async def _lookup(self, key: str, scope_type: ScopeType, scope_id: Optional[str]) -> _Entry:
        cache_key = (key, scope_type, scope_id)
        cached = self._entries.get(cache_key)
        now = self._clock()

        if cached is not None and cached.expires_at > now:
            inc_counter("policy_cache_hits_total")
            return cached

        inc_counter("policy_cache_misses_total")
        try:
            value = await retry_async(
                self._source.fetch, key, scope_type, scope_id,
                max_retries=self._max_retries,
                initial_delay=self._retry_base_delay,
                operation=f"policy fetch {key}@{scope_type.value}",
                sleep=self._sleep,
            )
        except Exception as exc:
            # Exhausted retries and non-retryable source errors alike
            if cached is not None:
                inc_counter("policy_stale_served_total")
                logger.warning(
                    f"Policy source unavailable for {key}@{scope_type.value}:{scope_id}, "
                    f"serving last known value"
                )
                return cached
            raise ConfigurationError(
                f"Policy source unavailable for '{key}' and nothing cached"
            ) from exc

        entry = _Entry(found=value is not None, value=value, expires_at=now + self._ttl)
        self._entries[cache_key] = entry
        return entry


class StaticPolicySource:
    """
    In-memory policy rows, for single-node deployments and tests.

    Example:
        source = StaticPolicySource()
        source.set("SLA_ACCEPT_MINUTES", 7, ScopeType.REGION, "toronto")
    """

    def __init__(self, rows: Mapping[CacheKey, Any] | None = None):
        self._rows: dict[CacheKey, Any] = dict(rows or {})

    def set(
        self,
        key: str,
        value: Any,
        scope_type: ScopeType = ScopeType.GLOBAL,
        scope_id: Optional[str] = None,
    ) -> None:
        self._rows[(key, scope_type, scope_id)] = value

    def remove(self, key: str, scope_type: ScopeType = ScopeType.GLOBAL, scope_id: Optional[str] = None) -> None:
        self._rows.pop((key, scope_type, scope_id), None)

    async def fetch(self, key: str, scope_type: ScopeType, scope_id: Optional[str]) -> Any:
        return self._rows.get((key, scope_type, scope_id))
