# tests/test_policy_cache.py
"""Tests for the read-through policy cache"""
import pytest

from dispatch_engine.core.dispatch.domain import ScopeType
from dispatch_engine.core.dispatch.errors import ConfigurationError
from dispatch_engine.infra.metrics import get_metrics_collector
from dispatch_engine.infra.policy_cache import CachedPolicyResolver, StaticPolicySource

from helpers import no_sleep

CHAIN = [
    (ScopeType.GLOBAL, None),
    (ScopeType.REGION, "toronto"),
    (ScopeType.SERVICE_CATEGORY, "plumbing"),
]


class CountingSource(StaticPolicySource):
    def __init__(self):
        super().__init__()
        self.fetches = 0
        self.down = False
        self.error = None

    async def fetch(self, key, scope_type, scope_id):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        if self.down:
            raise ConnectionError("policy store down")
        return await super().fetch(key, scope_type, scope_id)


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCachedPolicyResolver:
    def _resolver(self, source, clock=None, **kwargs):
        return CachedPolicyResolver(
            source,
            ttl_seconds=300,
            clock=clock or ManualClock(),
            sleep=no_sleep,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_most_specific_scope_wins(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        source.set("SLA_ACCEPT_MINUTES", 7, ScopeType.REGION, "toronto")

        assert await self._resolver(source).resolve("SLA_ACCEPT_MINUTES", CHAIN) == 7

    @pytest.mark.asyncio
    async def test_falls_back_to_default(self):
        resolver = self._resolver(CountingSource(), defaults={"SLA_ACCEPT_MINUTES": 5})
        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 5

    @pytest.mark.asyncio
    async def test_no_value_anywhere_raises(self):
        with pytest.raises(ConfigurationError):
            await self._resolver(CountingSource()).resolve("SLA_ACCEPT_MINUTES", CHAIN)

    @pytest.mark.asyncio
    async def test_second_read_within_ttl_hits_cache(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        resolver = self._resolver(source)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        fetches = source.fetches
        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)

        assert source.fetches == fetches
        assert get_metrics_collector().get_counter("policy_cache_hits_total") == 3

    @pytest.mark.asyncio
    async def test_missing_rows_are_cached_too(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        resolver = self._resolver(source)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        assert source.fetches == 3  # category, region: no row; global: row

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        assert source.fetches == 3

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        clock = ManualClock()
        resolver = self._resolver(source, clock=clock)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        source.set("SLA_ACCEPT_MINUTES", 12)
        clock.now += 301

        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 12

    @pytest.mark.asyncio
    async def test_value_change_not_seen_until_ttl(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        clock = ManualClock()
        resolver = self._resolver(source, clock=clock)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        source.set("SLA_ACCEPT_MINUTES", 12)
        clock.now += 299

        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 10

    @pytest.mark.asyncio
    async def test_source_outage_serves_last_known_value(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        clock = ManualClock()
        resolver = self._resolver(source, clock=clock)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        source.down = True
        clock.now += 3600

        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 10
        assert get_metrics_collector().get_counter("policy_stale_served_total") == 3

    @pytest.mark.asyncio
    async def test_source_outage_with_empty_cache_raises(self):
        source = CountingSource()
        source.down = True
        resolver = self._resolver(source, defaults={"SLA_ACCEPT_MINUTES": 5}, max_retries=2)

        with pytest.raises(ConfigurationError):
            await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        assert source.fetches == 3

    @pytest.mark.asyncio
    async def test_non_retryable_source_error_becomes_configuration_error(self):
        source = CountingSource()
        source.error = PermissionError("policy table access denied")
        source.error.retryable = False
        resolver = self._resolver(source, defaults={"SLA_ACCEPT_MINUTES": 5}, max_retries=3)

        with pytest.raises(ConfigurationError):
            await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        assert source.fetches == 1

    @pytest.mark.asyncio
    async def test_non_retryable_source_error_serves_last_known_value(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        clock = ManualClock()
        resolver = self._resolver(source, clock=clock)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        source.error = ValueError("malformed policy row")
        source.error.retryable = False
        clock.now += 3600

        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 10

    @pytest.mark.asyncio
    async def test_transient_outage_is_retried(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        calls = {"n": 0}
        original = source.fetch

        async def flaky(key, scope_type, scope_id):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("blip")
            return await original(key, scope_type, scope_id)

        source.fetch = flaky
        resolver = self._resolver(source)

        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 10

    @pytest.mark.asyncio
    async def test_invalidate_one_key(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        source.set("MAX_DISPATCH_ATTEMPTS", 4)
        resolver = self._resolver(source)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)
        await resolver.resolve("MAX_DISPATCH_ATTEMPTS", CHAIN)

        assert resolver.invalidate("SLA_ACCEPT_MINUTES") == 3
        assert {k[0] for k in resolver.cached_keys()} == {"MAX_DISPATCH_ATTEMPTS"}

        source.set("SLA_ACCEPT_MINUTES", 12)
        assert await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN) == 12

    @pytest.mark.asyncio
    async def test_invalidate_all(self):
        source = CountingSource()
        source.set("SLA_ACCEPT_MINUTES", 10)
        resolver = self._resolver(source)

        await resolver.resolve("SLA_ACCEPT_MINUTES", CHAIN)

        assert resolver.invalidate() == 3
        assert resolver.cached_keys() == []


class TestStaticPolicySource:
    @pytest.mark.asyncio
    async def test_set_fetch_remove(self):
        source = StaticPolicySource()
        source.set("SLA_ACCEPT_MINUTES", 7, ScopeType.REGION, "toronto")

        assert await source.fetch("SLA_ACCEPT_MINUTES", ScopeType.REGION, "toronto") == 7
        assert await source.fetch("SLA_ACCEPT_MINUTES", ScopeType.GLOBAL, None) is None

        source.remove("SLA_ACCEPT_MINUTES", ScopeType.REGION, "toronto")
        assert await source.fetch("SLA_ACCEPT_MINUTES", ScopeType.REGION, "toronto") is None
