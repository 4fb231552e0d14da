"""Tests for the two-tier cache."""

import asyncio
import json

import pytest

from pricing.cache.backends import InMemorySharedCache, create_shared_cache
from pricing.cache.circuit import CircuitBreaker, CircuitState
from pricing.cache.tiered import CacheLevel, CacheNamespace, TieredCache, make_key
from pricing.core.errors import InvalidArgumentError


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FailingSharedCache:
    """Shared backend whose every call fails."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args):
        self.calls += 1
        raise ConnectionError("shared cache unreachable")

    get = set = mget = pipeline_set = scan = delete = _fail


def test_make_key():
    """Test key layout."""
    assert make_key(CacheNamespace.PRICE, "t1") == "price:t1"
    assert make_key("metrics", "p1", "pair") == "metrics:p1:pair"


def test_create_shared_cache_from_url():
    """Test backend selection by URL."""
    assert create_shared_cache(None) is None
    assert create_shared_cache("") is None
    assert isinstance(create_shared_cache("memory://"), InMemorySharedCache)


class TestTieredCache:
    """Test tiered cache behaviour with an in-memory shared tier."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def shared(self, clock):
        return InMemorySharedCache(now_fn=clock)

    @pytest.fixture
    def cache(self, shared, clock):
        return TieredCache(shared=shared, sweep_interval=60.0, now_fn=clock)

    def test_default_ttls(self, cache):
        """Test TTL classes per namespace."""
        assert cache.default_ttl(CacheNamespace.PRICE) == 10
        assert cache.default_ttl(CacheNamespace.METRICS) == 300
        assert cache.default_ttl(CacheNamespace.TOKEN) == 300
        assert cache.default_ttl(CacheNamespace.CHART) == 1800
        assert cache.default_ttl("user") == 1800

    @pytest.mark.asyncio
    async def test_local_hit_skips_shared_tier(self, cache, shared):
        """Test that a live local entry answers without a shared read."""
        await cache.set(CacheNamespace.PRICE, "t1", "2.5")

        assert await cache.get(CacheNamespace.PRICE, "t1") == "2.5"
        assert shared.calls["get"] == 0
        assert cache.stats()["local_hits"] == 1

    @pytest.mark.asyncio
    async def test_shared_hit_backfills_local(self, cache, shared, clock):
        """Test read-through from the shared tier."""
        writer = TieredCache(shared=shared, now_fn=clock)
        await writer.set(CacheNamespace.TOKEN, "t1", {"symbol": "KKUB"})

        assert await cache.get(CacheNamespace.TOKEN, "t1") == {"symbol": "KKUB"}
        assert await cache.get(CacheNamespace.TOKEN, "t1") == {"symbol": "KKUB"}

        stats = cache.stats()
        assert stats["shared_hits"] == 1
        assert stats["local_hits"] == 1
        assert shared.calls["get"] == 1

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache, clock):
        """Test that nothing is served past its TTL."""
        await cache.set(CacheNamespace.PRICE, "t1", "1.0")

        clock.now += 9
        assert await cache.get(CacheNamespace.PRICE, "t1") == "1.0"

        clock.now += 1
        assert await cache.get(CacheNamespace.PRICE, "t1") is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, cache, clock):
        """Test that an explicit TTL overrides the namespace default."""
        await cache.set(CacheNamespace.PRICE, "t1", "1.0", ttl=100)

        clock.now += 50
        assert await cache.get(CacheNamespace.PRICE, "t1") == "1.0"

        clock.now += 49
        assert await cache.get(CacheNamespace.PRICE, "t1") == "1.0"

        clock.now += 2
        assert await cache.get(CacheNamespace.PRICE, "t1") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_is_rejected(self, cache):
        """Test that a zero or negative TTL is a contract error."""
        with pytest.raises(InvalidArgumentError):
            await cache.set(CacheNamespace.PRICE, "t1", "1.0", ttl=0)
        with pytest.raises(InvalidArgumentError):
            await cache.set_bulk(CacheNamespace.PRICE, {"t1": "1.0"}, ttl=-5)

        assert await cache.get(CacheNamespace.PRICE, "t1") is None

    @pytest.mark.asyncio
    async def test_backfill_keeps_writer_ttl(self, cache, shared, clock):
        """Test that a reader never outlives the writer's TTL."""
        writer = TieredCache(shared=shared, now_fn=clock)
        await writer.set(CacheNamespace.CHART, "0xabc", [1, 2], ttl=300)

        clock.now += 299
        assert await cache.get(CacheNamespace.CHART, "0xabc") == [1, 2]

        clock.now += 2
        assert await writer.get(CacheNamespace.CHART, "0xabc") is None
        assert await shared.get("chart:0xabc") is None
        assert await cache.get(CacheNamespace.CHART, "0xabc") is None

    @pytest.mark.asyncio
    async def test_bulk_backfill_keeps_writer_ttl(self, cache, shared, clock):
        """Test the same bound for multi-get backfills."""
        writer = TieredCache(shared=shared, now_fn=clock)
        await writer.set(CacheNamespace.TOKEN, "t1", {"a": 1}, ttl=20)

        clock.now += 15
        assert await cache.get_bulk(CacheNamespace.TOKEN, ["t1"]) == {"t1": {"a": 1}}

        clock.now += 6
        assert await cache.get_bulk(CacheNamespace.TOKEN, ["t1"]) == {}

    @pytest.mark.asyncio
    async def test_expired_envelope_is_a_miss(self, cache, shared, clock):
        """Test that a payload past its embedded expiry is not served."""
        payload = json.dumps({"v": "1", "exp": clock.now - 1})
        await shared.set("price:t1", payload, 60)

        assert await cache.get(CacheNamespace.PRICE, "t1") is None
        assert cache.stats()["shared_misses"] == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ignored(self, cache, shared):
        """Test that a payload without an envelope counts as an error."""
        await shared.set("price:t1", '"1"', 60)

        assert await cache.get(CacheNamespace.PRICE, "t1") is None
        assert cache.stats()["shared_errors"] == 1

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache, shared):
        """Test that None never becomes a cached value."""
        await cache.set(CacheNamespace.PRICE, "t1", None)

        assert await cache.get(CacheNamespace.PRICE, "t1") is None
        assert shared.calls["set"] == 0

    @pytest.mark.asyncio
    async def test_sub_keys_are_separate_entries(self, cache):
        """Test sub-key addressing."""
        await cache.set(CacheNamespace.CHART, "0xabc", [1], sub_key="1d:100")
        await cache.set(CacheNamespace.CHART, "0xabc", [2], sub_key="1w:100")

        assert await cache.get(CacheNamespace.CHART, "0xabc", "1d:100") == [1]
        assert await cache.get(CacheNamespace.CHART, "0xabc", "1w:100") == [2]
        assert await cache.get(CacheNamespace.CHART, "0xabc") is None

    @pytest.mark.asyncio
    async def test_get_bulk_uses_one_shared_round_trip(self, cache, shared, clock):
        """Test bulk reads: local hits, one multi-get, misses omitted."""
        writer = TieredCache(shared=shared, now_fn=clock)
        await writer.set(CacheNamespace.PRICE, "b", "2")
        await cache.set(CacheNamespace.PRICE, "a", "1")

        result = await cache.get_bulk(CacheNamespace.PRICE, ["a", "b", "c"])

        assert result == {"a": "1", "b": "2"}
        assert shared.calls["mget"] == 1
        assert shared.calls["get"] == 0

    @pytest.mark.asyncio
    async def test_set_bulk_uses_pipeline(self, cache, shared, clock):
        """Test bulk writes go to the shared tier in one pipeline."""
        await cache.set_bulk(CacheNamespace.PRICE, {"a": "1", "b": "2", "c": None})

        assert shared.calls["pipeline_set"] == 1
        assert shared.calls["set"] == 0
        payload = json.loads(await shared.get("price:a"))
        assert payload == {"v": "1", "exp": clock.now + 10}
        assert await shared.get("price:c") is None
        assert cache.stats()["shared_sets"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_removes_both_tiers(self, cache, shared):
        """Test single and bulk invalidation."""
        await cache.set(CacheNamespace.PAIR, "p1", {"id": "p1"})
        await cache.set(CacheNamespace.PAIR, "p2", {"id": "p2"})
        await cache.set(CacheNamespace.PAIR, "p3", {"id": "p3"})

        await cache.invalidate(CacheNamespace.PAIR, "p1")
        await cache.invalidate_bulk(CacheNamespace.PAIR, ["p2"])

        assert await cache.get(CacheNamespace.PAIR, "p1") is None
        assert await cache.get(CacheNamespace.PAIR, "p2") is None
        assert await shared.get("pair:p1") is None
        assert await cache.get(CacheNamespace.PAIR, "p3") == {"id": "p3"}

    @pytest.mark.asyncio
    async def test_invalidate_by_prefix(self, cache, shared):
        """Test prefix invalidation across both tiers."""
        await cache.set(CacheNamespace.CHART, "0xabc", [1], sub_key="1d:100")
        await cache.set(CacheNamespace.CHART, "0xabc", [2], sub_key="1w:100")
        await cache.set(CacheNamespace.CHART, "0xdef", [3], sub_key="1d:100")
        await cache.set(CacheNamespace.PRICE, "0xabc", "1")

        removed = await cache.invalidate_by_prefix(CacheNamespace.CHART, "0xabc")

        assert removed == 2
        assert await shared.scan("chart:0xabc*") == []
        assert await cache.get(CacheNamespace.CHART, "0xdef", "1d:100") == [3]
        assert await cache.get(CacheNamespace.PRICE, "0xabc") == "1"
        assert cache.stats()["prefix_invalidations"] == 1

    @pytest.mark.asyncio
    async def test_clear_local_keeps_shared(self, cache, shared):
        """Test clearing only the local tier."""
        await cache.set(CacheNamespace.TOKEN, "t1", {"a": 1})

        await cache.clear_all(CacheLevel.LOCAL)

        assert cache.stats()["local_size"] == 0
        assert await cache.get(CacheNamespace.TOKEN, "t1") == {"a": 1}

    @pytest.mark.asyncio
    async def test_clear_all_tiers(self, cache, shared):
        """Test clearing both tiers."""
        await cache.set(CacheNamespace.TOKEN, "t1", {"a": 1})
        await cache.set(CacheNamespace.METRICS, "protocol", {"b": 2}, sub_key="x")

        await cache.clear_all()

        assert await cache.get(CacheNamespace.TOKEN, "t1") is None
        assert await shared.scan("*") == []

    @pytest.mark.asyncio
    async def test_unserializable_value_stays_local(self, cache, shared):
        """Test that values JSON cannot encode are only cached locally."""
        value = {1, 2}
        await cache.set(CacheNamespace.USER, "u1", value)

        assert await cache.get(CacheNamespace.USER, "u1") == value
        assert shared.calls["set"] == 0
        assert cache.stats()["shared_errors"] == 1

    @pytest.mark.asyncio
    async def test_sweep_expired(self, cache, clock):
        """Test the explicit sweep."""
        await cache.set(CacheNamespace.PRICE, "a", "1")
        await cache.set(CacheNamespace.CHART, "b", [1])
        clock.now += 11

        assert await cache.sweep_expired() == 1
        assert cache.stats()["local_size"] == 1

    @pytest.mark.asyncio
    async def test_sweep_is_scheduled_by_writes(self, cache, clock):
        """Test that writes trigger a background sweep once per interval."""
        await cache.set(CacheNamespace.PRICE, "a", "1")
        clock.now += 61

        await cache.set(CacheNamespace.CHART, "b", [1])
        for _ in range(3):
            await asyncio.sleep(0)

        assert cache.stats()["local_size"] == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_stats_ratios_and_reset(self, cache):
        """Test derived ratios and counter reset."""
        await cache.set(CacheNamespace.PRICE, "a", "1")
        await cache.get(CacheNamespace.PRICE, "a")
        await cache.get(CacheNamespace.PRICE, "missing")

        stats = cache.stats()
        assert stats["local_hit_ratio"] == 0.5
        assert stats["shared_misses"] == 1
        assert stats["shared_state"] == "closed"

        cache.reset_stats()
        assert cache.stats()["local_hits"] == 0


class TestTieredCacheDegradation:
    """Test behaviour when the shared tier is missing or failing."""

    @pytest.mark.asyncio
    async def test_local_only_mode(self):
        """Test operation without a shared tier."""
        cache = TieredCache(shared=None)

        await cache.set(CacheNamespace.PRICE, "a", "1")
        assert await cache.get(CacheNamespace.PRICE, "a") == "1"
        assert await cache.get_bulk(CacheNamespace.PRICE, ["a", "b"]) == {"a": "1"}
        assert cache.stats()["shared_state"] == "disabled"

    @pytest.mark.asyncio
    async def test_shared_failures_never_reach_callers(self):
        """Test that errors are counted, logged and swallowed."""
        shared = FailingSharedCache()
        cache = TieredCache(shared=shared)

        await cache.set(CacheNamespace.PRICE, "a", "1")
        assert await cache.get(CacheNamespace.PRICE, "a") == "1"
        assert await cache.get(CacheNamespace.PRICE, "b") is None
        await cache.invalidate_by_prefix(CacheNamespace.PRICE)

        assert cache.stats()["shared_errors"] == 3

    @pytest.mark.asyncio
    async def test_breaker_stops_calls_to_failing_tier(self):
        """Test that the breaker opens and short-circuits the shared tier."""
        clock = FakeClock()
        shared = FailingSharedCache()
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=30, now_fn=clock)
        cache = TieredCache(shared=shared, breaker=breaker, now_fn=clock)

        await cache.get(CacheNamespace.PRICE, "a")
        await cache.get(CacheNamespace.PRICE, "b")
        assert breaker.state == CircuitState.OPEN
        calls = shared.calls

        await cache.get(CacheNamespace.PRICE, "c")
        await cache.set(CacheNamespace.PRICE, "c", "1")
        assert shared.calls == calls
        assert cache.stats()["shared_state"] == "open"

        clock.now += 30
        await cache.get(CacheNamespace.PRICE, "d")
        assert shared.calls == calls + 1
