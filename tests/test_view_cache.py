"""
View Cache Tests
Loader-backed reads, staleness, prefix invalidation and single-flight loads
"""

import asyncio

import pytest

from caching.view_cache import ViewCache, key_matches


class CountingLoader:
    """Loader that returns an incrementing value per call"""

    def __init__(self, prefix="v"):
        self.prefix = prefix
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        return f"{self.prefix}{self.calls}"


class TestKeyMatching:

    def test_prefix_match(self):
        assert key_matches(("escrows", "42", "summary", "sender"), ("escrows", "42"))
        assert not key_matches(("escrows", "420"), ("escrows", "42", "summary"))

    def test_exact_match(self):
        assert key_matches(("escrows", "42"), ("escrows", "42"), exact=True)
        assert not key_matches(("escrows", "42", "summary", "admin"), ("escrows", "42"), exact=True)


class TestViewCacheReads:
    """fetch, staleness and refetch"""

    @pytest.mark.asyncio
    async def test_fetch_caches_until_stale(self, clock):
        cache = ViewCache(stale_after=30, clock=clock)
        loader = CountingLoader()

        assert await cache.fetch(("k",), loader) == "v1"
        assert await cache.fetch(("k",), loader) == "v1"
        assert loader.calls == 1

        clock.advance(30)
        assert cache.is_stale(("k",))
        assert await cache.fetch(("k",), loader) == "v2"

    @pytest.mark.asyncio
    async def test_invalidated_entry_keeps_last_value(self, view_cache):
        loader = CountingLoader()
        await view_cache.fetch(("proofs", "p-1"), loader)

        view_cache.invalidate(("proofs",))

        assert view_cache.is_stale(("proofs", "p-1"))
        assert view_cache.peek(("proofs", "p-1")) == "v1"
        assert await view_cache.fetch(("proofs", "p-1"), loader) == "v2"

    @pytest.mark.asyncio
    async def test_refetch_uses_remembered_loader(self, view_cache):
        loader = CountingLoader()
        await view_cache.fetch(("payments", "pay-1"), loader)

        assert await view_cache.refetch(("payments", "pay-1")) == "v2"
        assert view_cache.stats["refetches"] == 1

    @pytest.mark.asyncio
    async def test_refetch_unknown_view_raises(self, view_cache):
        with pytest.raises(KeyError):
            await view_cache.refetch(("nothing",))

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_request(self, view_cache):
        loader = CountingLoader()

        results = await asyncio.gather(
            view_cache.fetch(("escrows", "42"), loader),
            view_cache.fetch(("escrows", "42"), loader),
            view_cache.fetch(("escrows", "42"), loader),
        )

        assert results == ["v1", "v1", "v1"]
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_failed_load_is_not_cached(self, view_cache):
        async def failing():
            raise RuntimeError("backend down")

        with pytest.raises(RuntimeError):
            await view_cache.fetch(("escrows", "42"), failing)

        assert not view_cache.contains(("escrows", "42"))


class TestViewCacheInvalidation:
    """Prefix, exact and bulk invalidation"""

    @pytest.mark.asyncio
    async def test_prefix_invalidation_covers_variants(self, view_cache):
        loader = CountingLoader()
        for viewer in ("sender", "admin", "provider"):
            await view_cache.fetch(("escrows", "42", "summary", viewer), loader)
        await view_cache.fetch(("escrows", "43", "summary", "sender"), loader)

        marked = view_cache.invalidate(("escrows", "42"))

        assert len(marked) == 3
        assert not view_cache.is_stale(("escrows", "43", "summary", "sender"))

    @pytest.mark.asyncio
    async def test_exact_invalidation_leaves_children(self, view_cache):
        loader = CountingLoader()
        await view_cache.fetch(("escrows", "42"), loader)
        await view_cache.fetch(("escrows", "42", "summary", "sender"), loader)

        assert view_cache.invalidate(("escrows", "42"), exact=True) == [("escrows", "42")]
        assert not view_cache.is_stale(("escrows", "42", "summary", "sender"))

    @pytest.mark.asyncio
    async def test_invalidation_during_load_leaves_result_stale(self, view_cache):
        release = asyncio.Event()
        calls = []

        async def slow_loader():
            calls.append(1)
            await release.wait()
            return f"v{len(calls)}"

        key = ("escrows", "42", "summary", "sender")
        pending = asyncio.create_task(view_cache.fetch(key, slow_loader))
        await asyncio.sleep(0)

        view_cache.invalidate(("escrows", "42"))
        release.set()

        assert await pending == "v1"
        assert view_cache.is_stale(key)
        assert await view_cache.fetch(key, slow_loader) == "v2"
        assert not view_cache.is_stale(key)

    @pytest.mark.asyncio
    async def test_invalidation_during_load_ignores_other_views(self, view_cache):
        release = asyncio.Event()

        async def slow_loader():
            await release.wait()
            return "v1"

        key = ("escrows", "43", "summary", "sender")
        pending = asyncio.create_task(view_cache.fetch(key, slow_loader))
        await asyncio.sleep(0)

        view_cache.invalidate(("escrows", "42"))
        release.set()

        assert await pending == "v1"
        assert not view_cache.is_stale(key)

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self, view_cache):
        await view_cache.fetch(("a",), CountingLoader())
        await view_cache.fetch(("b",), CountingLoader())

        view_cache.clear()

        assert view_cache.keys() == []
        assert view_cache.get_stats()["cache_size"] == 0

    @pytest.mark.asyncio
    async def test_stats_report_hit_rate(self, view_cache):
        loader = CountingLoader()
        await view_cache.fetch(("a",), loader)
        await view_cache.fetch(("a",), loader)

        stats = view_cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0
