"""
Cache manager for the TechTrend cache namespaces.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import CacheBackendError, ValidationError
from .client import CacheClient
from .keyed_cache import KeyedCache
from .populator import GetOrSetPopulator
from .serialization import codec_for
from ..models import FavoriteStatus, TagCloudEntry, ViewStatus

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


NAMESPACE_TYPES: Dict[str, Any] = {
    "stats": Dict[str, Any],
    "trends": Dict[str, Any],
    "tagcloud": List[TagCloudEntry],
    "favorites": FavoriteStatus,
    "views": ViewStatus,
    "articles": Any,
    "lists": Any,
    "related": Any,
    "search": Any,
}

LOW_HIT_RATE = 50
HIGH_MEMORY_RATIO = 0.8


@dataclass
class WarmEntry:
    """One value to pre-compute into a namespace.

    ``interval`` is how often periodic warming refreshes it; ``None`` means
    only on startup or on demand.
    """
    namespace: str
    key: str
    compute: Callable[[], Awaitable[Any]]
    ttl: Optional[int] = None
    interval: Optional[float] = None


class CacheManager:
    """Owns the namespaced caches and reports on them."""

    def __init__(
        self,
        client: CacheClient,
        config: "BaseConfig",
        *,
        metrics: Optional["MetricsCollector"] = None,
        namespace_types: Optional[Dict[str, Any]] = None,
    ):
        self.client = client
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("cache.manager")
        self._warm_semaphore = asyncio.Semaphore(max(1, config.cache_warm_concurrency))

        self._caches: Dict[str, KeyedCache] = {}
        self._populators: Dict[str, GetOrSetPopulator] = {}
        for name, type_ in (namespace_types or NAMESPACE_TYPES).items():
            cache = KeyedCache(
                client,
                name,
                default_ttl=config.ttl_for(name),
                codec=codec_for(type_),
                key_prefix=config.cache_key_prefix,
                metrics=metrics,
            )
            self._caches[name] = cache
            self._populators[name] = GetOrSetPopulator(
                cache,
                single_flight=config.cache_single_flight,
                stale_after=config.stale_after_for(name),
            )

    def __contains__(self, name: str) -> bool:
        return name in self._caches

    def namespace(self, name: str) -> KeyedCache:
        try:
            return self._caches[name]
        except KeyError:
            raise ValidationError(f"Unknown cache namespace: {name}", {"namespace": name}) from None

    def populator(self, name: str) -> GetOrSetPopulator:
        self.namespace(name)
        return self._populators[name]

    def namespaces(self) -> Dict[str, KeyedCache]:
        return dict(self._caches)

    async def get_or_set(self, namespace: str, key: str,
                         compute_fn: Callable[[], Awaitable[Any]], ttl: Optional[int] = None) -> Any:
        """Cache-aside read; namespaces with a stale window use stale-while-revalidate."""
        populator = self.populator(namespace)
        if populator.stale_after is not None:
            return await populator.get_or_set_swr(key, compute_fn, ttl)
        return await populator.get_or_set(key, compute_fn, ttl)

    async def clear_namespace(self, name: str, *, strict: bool = False) -> int:
        deleted = await self.namespace(name).clear(strict=strict)
        self.logger.info("Cleared cache namespace", namespace=name, keys_count=deleted)
        return deleted

    def reset_stats(self, namespace: Optional[str] = None):
        targets: Iterable[KeyedCache] = (
            [self.namespace(namespace)] if namespace else self._caches.values()
        )
        for cache in targets:
            cache.reset_stats()

    async def build_stats_report(self) -> Dict[str, Any]:
        """Statistics for every namespace plus Redis health and advice."""
        caches = {name: cache.get_stats() for name, cache in self._caches.items()}
        hits = sum(c["hits"] for c in caches.values())
        misses = sum(c["misses"] for c in caches.values())
        total = hits + misses

        redis_status = await self._redis_status()

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "caches": {
                name: {
                    "hits": c["hits"],
                    "misses": c["misses"],
                    "hitRate": c["hitRate"],
                    "lastResetAt": c["lastResetAt"],
                }
                for name, c in caches.items()
            },
            "overall": {
                "hits": hits,
                "misses": misses,
                "hitRate": int(hits * 100 / total + 0.5) if total else 0,
                "namespaces": len(caches),
            },
            "redis": redis_status,
            "recommendations": self._recommendations(caches, redis_status, total),
        }

    async def _redis_status(self) -> Dict[str, Any]:
        connected = await self.client.ping()
        status: Dict[str, Any] = {"connected": connected}
        if not connected:
            return status

        try:
            info = await self.client.info()
        except CacheBackendError as exc:
            self.logger.error("Cache stats error", error=str(exc))
            return status

        if info.get("used_memory_human"):
            status["memoryUsed"] = info["used_memory_human"]
        if info.get("used_memory_peak_human"):
            status["memoryPeak"] = info["used_memory_peak_human"]
        used, limit = info.get("used_memory"), info.get("maxmemory")
        if used and limit:
            status["memoryRatio"] = round(used / limit, 4)
        return status

    def _recommendations(self, caches: Dict[str, Dict[str, Any]],
                         redis_status: Dict[str, Any], total: int) -> List[str]:
        recommendations: List[str] = []

        if not redis_status.get("connected"):
            recommendations.append(
                "Redis is unreachable; caches are in pass-through mode and every lookup hits the database"
            )

        if redis_status.get("memoryRatio", 0) > HIGH_MEMORY_RATIO:
            recommendations.append(
                "Redis memory usage is above 80% of maxmemory; shorten TTLs or clear low-priority namespaces such as search"
            )

        if total == 0:
            recommendations.append("No cache traffic since the last reset; statistics are not meaningful yet")
            return recommendations

        for name, stats in caches.items():
            requests = stats["hits"] + stats["misses"]
            if requests >= self.config.recommendation_min_requests and stats["hitRate"] < LOW_HIT_RATE:
                recommendations.append(
                    f"Hit rate for '{name}' is {stats['hitRate']}% over {requests} lookups; "
                    "consider a longer TTL or warming this namespace"
                )
            if stats["errors"]:
                recommendations.append(
                    f"'{name}' saw {stats['errors']} backend errors since the last reset"
                )

        return recommendations

    async def warm(self, plan: List[WarmEntry]) -> Dict[str, Any]:
        """Pre-compute entries concurrently; failures are collected, not raised."""
        summary: Dict[str, Any] = {
            "planned": len(plan),
            "warmed": 0,
            "skipped": 0,
            "errors": [],
        }
        if not plan:
            self.logger.info("No entries to warm; cache warm skipped")
            return summary

        results = await asyncio.gather(*(self._warm_entry(entry) for entry in plan), return_exceptions=True)
        for entry, outcome in zip(plan, results):
            if isinstance(outcome, Exception):
                summary["errors"].append(f"{entry.namespace}:{entry.key}: {outcome}")
            elif outcome:
                summary["warmed"] += 1
            else:
                summary["skipped"] += 1

        self.logger.info(
            "Cache warm completed",
            warmed=summary["warmed"],
            skipped=summary["skipped"],
            errors=len(summary["errors"]),
        )
        return summary

    async def _warm_entry(self, entry: WarmEntry) -> bool:
        async with self._warm_semaphore:
            start = time.perf_counter()
            result = "skipped"
            try:
                value = await self.populator(entry.namespace).refresh(entry.key, entry.compute, entry.ttl)
                result = "warmed" if value is not None else "skipped"
                return value is not None
            except Exception as exc:
                result = "error"
                self.logger.error(
                    "Failed to warm cache entry",
                    namespace=entry.namespace,
                    key=entry.key,
                    error=str(exc),
                )
                raise
            finally:
                if self.metrics:
                    self.metrics.increment_counter("cache_warm_total", namespace=entry.namespace, result=result)
                self.logger.debug(
                    "Warmed cache entry",
                    namespace=entry.namespace,
                    key=entry.key,
                    result=result,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
