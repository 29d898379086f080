import pytest

from pcbcrm.cache.categories import CacheCategory
from pcbcrm.errors import ComputeError
from pcbcrm.services.cache_policy import read_through

REVIEWS = CacheCategory.REVIEWS


async def broken():
    raise RuntimeError("upstream down")


async def test_fresh_read(cache, clock):
    async def compute():
        return ["5 stars"]

    read = await read_through(cache, "k", REVIEWS, compute, serve_stale=False)
    assert read.value == ["5 stars"]
    assert read.status.cached_at == clock.now
    assert not read.served_stale


async def test_serves_stale_when_allowed(cache, clock):
    cache.set("k", "last good", REVIEWS)
    clock.advance(minutes=16)

    read = await read_through(cache, "k", REVIEWS, broken, serve_stale=True)
    assert read.value == "last good"
    assert read.served_stale
    assert read.status.is_stale


async def test_raises_when_stale_not_allowed(cache, clock):
    cache.set("k", "last good", REVIEWS)
    clock.advance(minutes=16)

    with pytest.raises(ComputeError):
        await read_through(cache, "k", REVIEWS, broken, serve_stale=False)


async def test_raises_when_nothing_to_serve(cache):
    with pytest.raises(ComputeError):
        await read_through(cache, "k", REVIEWS, broken, serve_stale=True)


async def test_force_refresh_ignores_fresh_entry(cache):
    cache.set("k", "old", REVIEWS)

    async def compute():
        return "new"

    read = await read_through(cache, "k", REVIEWS, compute, serve_stale=False, force_refresh=True)
    assert read.value == "new"
