import asyncio
from datetime import timedelta

import pytest

from conftest import FakeClock
from pcbcrm.cache.categories import CacheCategory, TTLPolicy
from pcbcrm.cache.sweeper import CacheSweepLoop
from pcbcrm.cache.tiered import MISS, TieredCache
from pcbcrm.config import Settings
from pcbcrm.errors import ComputeError

DASH = CacheCategory.DASHBOARD_SUMMARY
INTEL = CacheCategory.MERCHANT_INTEL


class TestTTLPolicy:
    def test_from_settings(self, settings):
        policy = TTLPolicy.from_settings(settings)
        assert policy.ttl(DASH) == timedelta(seconds=30)
        assert policy.ttl(INTEL) == timedelta(hours=1)
        assert policy.ttl(CacheCategory.REVIEWS) == timedelta(minutes=15)
        assert policy.ttl(CacheCategory.MERCHANT_INFO) == timedelta(hours=24)

    def test_overridden_by_environment(self, monkeypatch):
        monkeypatch.setenv("PCB_CACHE_REVIEWS_TTL", "60")
        policy = TTLPolicy.from_settings(Settings())
        assert policy.ttl(CacheCategory.REVIEWS) == timedelta(seconds=60)

    def test_unknown_category_falls_back_to_default(self):
        policy = TTLPolicy({CacheCategory.DEFAULT: timedelta(minutes=5)})
        assert policy.ttl(CacheCategory.PRICING) == timedelta(minutes=5)

    def test_requires_default_and_positive_ttls(self):
        with pytest.raises(ValueError):
            TTLPolicy({DASH: timedelta(seconds=30)})
        with pytest.raises(ValueError):
            TTLPolicy({CacheCategory.DEFAULT: timedelta(0)})


class TestGetSet:
    def test_miss_then_hit(self, cache):
        assert cache.get("k") is MISS
        assert not MISS
        cache.set("k", {"v": 1}, DASH)
        assert cache.get("k") == {"v": 1}
        assert "k" in cache

    def test_falsy_values_are_cached(self, cache):
        cache.set("zero", 0)
        cache.set("none", None)
        assert cache.get("zero") == 0
        assert cache.get("none") is None

    def test_expiry_follows_category_ttl(self, cache, clock):
        entry = cache.set("dash", 1, DASH)
        assert entry.expires_at == entry.computed_at + timedelta(seconds=30)
        cache.set("intel", 2, INTEL)

        clock.advance(seconds=30)
        assert cache.get("dash") == 1
        clock.advance(seconds=1)
        assert cache.get("dash") is MISS
        assert cache.get("intel") == 2

    def test_expired_entry_is_kept_for_stale_reads_until_swept(self, cache, clock):
        cache.set("dash", 1, DASH)
        clock.advance(minutes=5)
        assert cache.get("dash") is MISS
        assert cache.peek("dash").value == 1
        assert cache.cleanup() == 1
        assert cache.peek("dash") is None
        assert cache.stats().expirations == 1

    def test_set_replaces_unconditionally(self, cache, clock):
        cache.set("k", 1, INTEL)
        clock.advance(seconds=10)
        entry = cache.set("k", 2, DASH)
        assert cache.get("k") == 2
        assert entry.category is DASH
        assert entry.computed_at == clock.now

    def test_status(self, cache, clock):
        missing = cache.status("nope")
        assert (missing.cached_at, missing.expires_at, missing.is_stale) == (None, None, True)

        cache.set("k", 1, DASH)
        fresh = cache.status("k")
        assert fresh.cached_at == clock.now
        assert not fresh.is_stale
        clock.advance(minutes=1)
        assert cache.status("k").is_stale

    def test_key_helper(self):
        assert TieredCache.key("merchant", 42, "reviews") == "merchant:42:reviews"


class TestInvalidation:
    def test_invalidate_regardless_of_ttl(self, cache):
        cache.set("k", 1, INTEL)
        assert cache.invalidate("k")
        assert cache.get("k") is MISS
        assert not cache.invalidate("k")

    def test_invalidate_category(self, cache):
        cache.set("a", 1, DASH)
        cache.set("b", 2, DASH)
        cache.set("c", 3, INTEL)
        assert cache.invalidate_category(DASH) == 2
        assert cache.get("a") is MISS and cache.get("b") is MISS
        assert cache.get("c") == 3

    def test_invalidate_prefix(self, cache):
        cache.set("merchant:1:reviews", 1)
        cache.set("merchant:1:pricing", 2)
        cache.set("merchant:12:reviews", 3)
        assert cache.invalidate_prefix("merchant:1:") == 2
        assert cache.get("merchant:12:reviews") == 3

    def test_clear(self, cache):
        cache.set("a", 1)
        cache.clear()
        assert len(cache) == 0


def test_least_recently_used_entry_is_evicted(settings, clock):
    cache = TieredCache(TTLPolicy.from_settings(settings), max_size=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is MISS
    assert cache.get("a") == 1 and cache.get("c") == 3
    assert cache.stats().evictions == 1


class TestGetOrCompute:
    async def test_computes_once_then_serves_cache(self, cache):
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            return {"total": 10}

        assert await cache.get_or_compute("k", DASH, compute) == {"total": 10}
        assert await cache.get_or_compute("k", DASH, compute) == {"total": 10}
        assert calls == 1

    async def test_recomputes_after_expiry(self, cache, clock):
        values = iter([1, 2])

        async def compute():
            return next(values)

        assert await cache.get_or_compute("k", DASH, compute) == 1
        clock.advance(seconds=31)
        assert await cache.get_or_compute("k", DASH, compute) == 2

    async def test_concurrent_callers_share_one_computation(self, cache):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        waiters = [asyncio.create_task(cache.get_or_compute("k", DASH, compute)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*waiters) == ["value"] * 5
        assert calls == 1

    async def test_failure_keeps_previous_entry_and_reports_it(self, cache, clock):
        cache.set("k", "old", DASH)
        clock.advance(seconds=31)

        async def broken():
            raise RuntimeError("db down")

        with pytest.raises(ComputeError) as excinfo:
            await cache.get_or_compute("k", DASH, broken)

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert excinfo.value.stale.value == "old"

    async def test_refresh_does_not_join_an_older_computation(self, cache):
        release = asyncio.Event()

        async def before_the_write():
            await release.wait()
            return "old"

        async def after_the_write():
            return "new"

        reader = asyncio.create_task(cache.get_or_compute("k", DASH, before_the_write))
        await asyncio.sleep(0)

        entry = await cache.refresh("k", DASH, after_the_write)
        assert entry.value == "new"

        release.set()
        assert await reader == "old"
        assert cache.get("k") == "new"
        assert excinfo.value.key == "k"
        assert cache.peek("k").value == "old"

    async def test_failure_without_previous_entry(self, cache):
        async def broken():
            raise RuntimeError("upstream 500")

        with pytest.raises(ComputeError) as excinfo:
            await cache.get_or_compute("k", DASH, broken)
        assert excinfo.value.stale is None
        assert cache.get("k") is MISS

    async def test_failure_reaches_every_waiter(self, cache):
        release = asyncio.Event()

        async def broken():
            await release.wait()
            raise RuntimeError("boom")

        waiters = [asyncio.create_task(cache.get_or_compute("k", DASH, broken)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*waiters, return_exceptions=True)
        assert all(isinstance(r, ComputeError) for r in results)

    async def test_next_call_after_failure_retries(self, cache):
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("first call fails")
            return "ok"

        with pytest.raises(ComputeError):
            await cache.get_or_compute("k", DASH, flaky)
        assert await cache.get_or_compute("k", DASH, flaky) == "ok"

    async def test_waiter_takes_over_when_leader_is_cancelled(self, cache):
        started = asyncio.Event()
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            if calls == 1:
                started.set()
                await asyncio.sleep(10)
            return "second"

        leader = asyncio.create_task(cache.get_or_compute("k", DASH, slow))
        await started.wait()
        follower = asyncio.create_task(cache.get_or_compute("k", DASH, slow))
        await asyncio.sleep(0)
        leader.cancel()

        assert await follower == "second"
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert calls == 2


class TestRefresh:
    async def test_refresh_recomputes_fresh_entry(self, cache, clock):
        cache.set("k", "old", DASH)

        async def compute():
            return "new"

        entry = await cache.refresh("k", DASH, compute)
        assert entry.value == "new"
        assert entry.expires_at == clock.now + timedelta(seconds=30)
        assert cache.get("k") == "new"
        assert cache.stats().refreshes == 1

    async def test_failed_refresh_reports_invalidated_entry(self, cache):
        cache.set("k", "old", DASH)

        async def broken():
            raise RuntimeError("nope")

        with pytest.raises(ComputeError) as excinfo:
            await cache.refresh("k", DASH, broken)
        assert excinfo.value.stale.value == "old"


def test_stats(cache):
    cache.set("a", 1, DASH)
    cache.set("b", 2, INTEL)
    cache.get("a")
    cache.get("missing")

    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.size) == (1, 1, 2)
    assert stats.hit_rate == 0.5
    assert stats.categories == {"dashboard_summary": 1, "merchant_intel": 1}


async def test_sweep_loop_removes_expired_entries(settings):
    clock = FakeClock()
    cache = TieredCache(TTLPolicy.from_settings(settings), clock=clock)
    cache.set("dash", 1, DASH)
    clock.advance(minutes=1)

    loop = CacheSweepLoop(cache, interval=3600)
    await loop.start()
    await asyncio.sleep(0.01)
    assert loop.running
    await loop.stop()

    assert len(cache) == 0
    assert not loop.running
