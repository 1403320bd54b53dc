"""
Unit tests for cache-aside population.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_cache.app.caching.keyed_cache import KeyedCache
from service_cache.app.caching.populator import GetOrSetPopulator


class TestGetOrSetPopulator:
    """Test cases for GetOrSetPopulator."""

    @pytest.fixture
    def stats_cache(self, cache_client):
        return KeyedCache(cache_client, "stats", default_ttl=60)

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)
        calls = []

        async def compute_stats():
            calls.append(1)
            return {"articles": 120, "day": "2024-01-01"}

        first = await populator.get_or_set("daily-2024-01-01", compute_stats)
        second = await populator.get_or_set("daily-2024-01-01", compute_stats)

        assert first == second == {"articles": 120, "day": "2024-01-01"}
        assert len(calls) == 1
        stats = stats_cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_computation(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"value": 7}

        results = await asyncio.gather(*(populator.get_or_set("k", compute) for _ in range(5)))

        assert len(calls) == 1
        assert results == [{"value": 7}] * 5
        assert populator.in_flight == 0

    @pytest.mark.asyncio
    async def test_without_single_flight_each_miss_computes(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, single_flight=False)
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"value": 7}

        await asyncio.gather(*(populator.get_or_set("k", compute) for _ in range(3)))

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_errors_reach_every_waiter_and_are_not_cached(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)

        async def failing():
            await asyncio.sleep(0.01)
            raise RuntimeError("database down")

        results = await asyncio.gather(
            *(populator.get_or_set("k", failing) for _ in range(3)),
            return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert await stats_cache.get("k") is None
        assert populator.in_flight == 0

        async def healthy():
            return {"ok": True}

        assert await populator.get_or_set("k", healthy) == {"ok": True}

    @pytest.mark.asyncio
    async def test_none_result_is_not_cached(self, stats_cache, fake_redis):
        populator = GetOrSetPopulator(stats_cache)
        calls = []

        async def compute():
            calls.append(1)
            return None

        assert await populator.get_or_set("k", compute) is None
        assert await populator.get_or_set("k", compute) is None
        assert len(calls) == 2
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_cache_outage_falls_back_to_compute(self, stats_cache, fake_redis):
        populator = GetOrSetPopulator(stats_cache)
        fake_redis.fail = True

        async def compute():
            return {"value": 1}

        assert await populator.get_or_set("k", compute) == {"value": 1}
        assert stats_cache.get_stats()["errors"] == 2

    @pytest.mark.asyncio
    async def test_refresh_overwrites_cached_value(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)
        await stats_cache.set("k", {"value": 1})

        async def compute():
            return {"value": 2}

        assert await populator.refresh("k", compute, ttl=10) == {"value": 2}
        assert await stats_cache.get("k") == {"value": 2}

    @pytest.mark.asyncio
    async def test_cancelling_the_first_caller_does_not_cancel_joiners(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.05)
            return {"value": 7}

        leader = asyncio.ensure_future(populator.get_or_set("k", compute))
        await asyncio.sleep(0.01)
        joiner = asyncio.ensure_future(populator.get_or_set("k", compute))
        await asyncio.sleep(0.01)
        leader.cancel()

        assert await joiner == {"value": 7}
        assert leader.cancelled()
        assert len(calls) == 1
        assert await stats_cache.get("k") == {"value": 7}
        assert populator.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_alone_still_fills_cache(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)

        async def compute():
            await asyncio.sleep(0.02)
            return {"value": 3}

        caller = asyncio.ensure_future(populator.get_or_set("k", compute))
        await asyncio.sleep(0.005)
        caller.cancel()
        await asyncio.sleep(0.04)

        assert caller.cancelled()
        assert await stats_cache.get("k") == {"value": 3}
        assert populator.in_flight == 0


class TestStaleWhileRevalidate:
    """Test cases for GetOrSetPopulator.get_or_set_swr."""

    @pytest.fixture
    def stats_cache(self, cache_client):
        return KeyedCache(cache_client, "stats", default_ttl=3600)

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served_without_compute(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, stale_after=600)
        await stats_cache.set("overall", {"articleCount": 1})
        calls = []

        async def compute():
            calls.append(1)
            return {"articleCount": 2}

        assert await populator.get_or_set_swr("overall", compute) == {"articleCount": 1}
        assert calls == []
        assert populator.in_flight == 0

    @pytest.mark.asyncio
    async def test_stale_entry_is_served_and_refreshed_in_background(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, stale_after=0)
        await stats_cache.set("overall", {"articleCount": 1})

        async def compute():
            await asyncio.sleep(0.01)
            return {"articleCount": 2}

        assert await populator.get_or_set_swr("overall", compute) == {"articleCount": 1}
        assert populator.in_flight == 1

        await asyncio.sleep(0.03)

        assert populator.in_flight == 0
        assert await stats_cache.get("overall") == {"articleCount": 2}

    @pytest.mark.asyncio
    async def test_concurrent_stale_reads_share_one_revalidation(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, stale_after=0)
        await stats_cache.set("overall", {"articleCount": 1})
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"articleCount": 2}

        results = await asyncio.gather(*(populator.get_or_set_swr("overall", compute) for _ in range(4)))
        await asyncio.sleep(0.03)

        assert results == [{"articleCount": 1}] * 4
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failed_revalidation_keeps_stale_value(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, stale_after=0)
        await stats_cache.set("overall", {"articleCount": 1})

        async def failing():
            raise RuntimeError("database down")

        assert await populator.get_or_set_swr("overall", failing) == {"articleCount": 1}
        await asyncio.sleep(0.01)

        assert populator.in_flight == 0
        assert await stats_cache.get("overall") == {"articleCount": 1}

    @pytest.mark.asyncio
    async def test_miss_computes_in_foreground(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache, stale_after=600)

        async def compute():
            return {"articleCount": 5}

        assert await populator.get_or_set_swr("overall", compute) == {"articleCount": 5}
        assert await stats_cache.get("overall") == {"articleCount": 5}

    @pytest.mark.asyncio
    async def test_without_stale_window_behaves_like_get_or_set(self, stats_cache):
        populator = GetOrSetPopulator(stats_cache)
        await stats_cache.set("overall", {"articleCount": 1})
        calls = []

        async def compute():
            calls.append(1)
            return {"articleCount": 2}

        assert await populator.get_or_set_swr("overall", compute) == {"articleCount": 1}
        assert calls == []
