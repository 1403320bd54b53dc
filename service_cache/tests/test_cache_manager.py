"""
Unit tests for the cache manager.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import BaseConfig
from shared.errors import ValidationError
from service_cache.app.caching.cache_manager import CacheManager, WarmEntry


class TestCacheManager:
    """Test cases for CacheManager."""

    @pytest.fixture
    def manager(self, cache_client, config, dummy_metrics):
        return CacheManager(cache_client, config, metrics=dummy_metrics)

    def test_namespaces_use_configured_ttls(self, manager):
        assert manager.namespace("stats").default_ttl == 3600
        assert manager.namespace("favorites").default_ttl == 60
        assert "trends" in manager
        assert "bogus" not in manager

    def test_unknown_namespace_is_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.namespace("bogus")

    @pytest.mark.asyncio
    async def test_stats_report(self, manager):
        stats = manager.namespace("stats")
        await stats.set("overall", {"articleCount": 1})
        await stats.get("overall")
        await stats.get("missing")
        await manager.namespace("trends").get("7d")

        report = await manager.build_stats_report()

        assert report["caches"]["stats"]["hits"] == 1
        assert report["caches"]["stats"]["misses"] == 1
        assert report["caches"]["stats"]["hitRate"] == 50
        assert report["caches"]["trends"]["hitRate"] == 0
        assert set(report["caches"]["stats"]) == {"hits", "misses", "hitRate", "lastResetAt"}
        assert report["overall"]["hits"] == 1
        assert report["overall"]["misses"] == 2
        assert report["overall"]["hitRate"] == 33
        assert report["overall"]["namespaces"] == len(manager.namespaces())
        assert report["redis"]["connected"] is True
        assert report["redis"]["memoryUsed"] == "900B"
        assert report["redis"]["memoryPeak"] == "1.20K"

    @pytest.mark.asyncio
    async def test_recommendations_without_traffic(self, manager):
        report = await manager.build_stats_report()

        assert report["overall"]["hitRate"] == 0
        assert any("No cache traffic" in r for r in report["recommendations"])
        # 900 of 1000 bytes used
        assert any("memory" in r for r in report["recommendations"])

    @pytest.mark.asyncio
    async def test_low_hit_rate_recommendation(self, manager):
        trends = manager.namespace("trends")
        for _ in range(4):
            await trends.get("missing")

        report = await manager.build_stats_report()

        assert any("'trends'" in r and "0%" in r for r in report["recommendations"])

    @pytest.mark.asyncio
    async def test_unreachable_redis(self, manager, fake_redis):
        fake_redis.fail = True

        report = await manager.build_stats_report()

        assert report["redis"] == {"connected": False}
        assert any("unreachable" in r for r in report["recommendations"])

    @pytest.mark.asyncio
    async def test_reset_single_namespace(self, manager):
        await manager.namespace("stats").get("a")
        await manager.namespace("trends").get("a")

        manager.reset_stats("stats")

        assert manager.namespace("stats").get_stats()["misses"] == 0
        assert manager.namespace("trends").get_stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_get_or_set_uses_namespace(self, manager, fake_redis):
        async def compute():
            return {"articleCount": 3}

        assert await manager.get_or_set("stats", "overall", compute) == {"articleCount": 3}
        assert "@techtrend/cache:stats:overall" in fake_redis.data

    @pytest.mark.asyncio
    async def test_stale_window_serves_stale_and_revalidates(self, cache_client):
        manager = CacheManager(cache_client, BaseConfig(cache_stale_after={"stats": 0}))
        await manager.namespace("stats").set("overall", {"articleCount": 1})

        async def compute():
            return {"articleCount": 2}

        assert manager.populator("stats").stale_after == 0
        assert manager.populator("favorites").stale_after is None
        assert await manager.get_or_set("stats", "overall", compute) == {"articleCount": 1}
        await asyncio.sleep(0.01)
        assert await manager.namespace("stats").get("overall") == {"articleCount": 2}

    @pytest.mark.asyncio
    async def test_warm_collects_failures(self, manager, dummy_metrics):
        async def good():
            return {"articleCount": 3}

        async def empty():
            return None

        async def broken():
            raise RuntimeError("database down")

        summary = await manager.warm([
            WarmEntry("stats", "overall", good),
            WarmEntry("trends", "7d", empty),
            WarmEntry("tagcloud", "top:50", broken),
        ])

        assert summary["planned"] == 3
        assert summary["warmed"] == 1
        assert summary["skipped"] == 1
        assert len(summary["errors"]) == 1
        assert "tagcloud:top:50" in summary["errors"][0]
        assert await manager.namespace("stats").get("overall") == {"articleCount": 3}
        assert dummy_metrics.counted("cache_warm_total", namespace="tagcloud", result="error") == 1

    @pytest.mark.asyncio
    async def test_warm_empty_plan(self, manager):
        assert await manager.warm([]) == {"planned": 0, "warmed": 0, "skipped": 0, "errors": []}
