"""
Two-layer cache (process memory, then Redis) in front of a batched backend.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from shared.logging import get_logger
from .keyed_cache import KeyedCache
from .memory_cache import MemoryCache
from ..models import BatchResult


V = TypeVar("V")

Fetcher = Callable[[List[str]], Awaitable[Mapping[str, V]]]


class TwoLayerCache(Generic[V]):
    """L1 memory -> L2 Redis -> backend lookup for a batch of keys.

    L2 hits are promoted into L1; backend results are written to both layers.
    An L2 outage only costs latency: the keys fall through to the backend.
    """

    def __init__(
        self,
        l1: MemoryCache,
        l2: Optional[KeyedCache[V]],
        prefix: str,
        *,
        l1_ttl: float = 30,
        l2_ttl: int = 60,
    ):
        self.l1 = l1
        self.l2 = l2
        self.prefix = prefix
        self.l1_ttl = l1_ttl
        self.l2_ttl = l2_ttl
        self.logger = get_logger(f"cache.two_layer.{prefix}")
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {"l1Hits": 0, "l2Hits": 0, "dbQueries": 0, "totalRequests": 0, "batchCount": 0}

    def _l1_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def batch_load(self, keys: Sequence[str], fetcher: Fetcher) -> BatchResult[V]:
        start = time.perf_counter()
        self._stats["batchCount"] += 1
        self._stats["totalRequests"] += len(keys)

        found: Dict[str, V] = {}
        l1_hits = l2_hits = 0

        l2_check: List[str] = []
        for key in keys:
            cached = self.l1.get(self._l1_key(key))
            if cached is not None:
                found[key] = cached
                l1_hits += 1
            else:
                l2_check.append(key)

        db_check: List[str] = []
        if l2_check and self.l2 is not None:
            l2_values = await self.l2.get_many(l2_check)
            for key in l2_check:
                value = l2_values.get(key)
                if value is not None:
                    found[key] = value
                    l2_hits += 1
                    self.l1.set(self._l1_key(key), value, self.l1_ttl)
                else:
                    db_check.append(key)
        else:
            db_check = l2_check

        if db_check:
            self._stats["dbQueries"] += 1
            fetched = await fetcher(db_check)
            to_store = []
            for key in db_check:
                value = fetched.get(key)
                if value is None:
                    continue
                found[key] = value
                self.l1.set(self._l1_key(key), value, self.l1_ttl)
                to_store.append((key, value))
            if self.l2 is not None and to_store:
                await self.l2.set_many(to_store, self.l2_ttl)

        self._stats["l1Hits"] += l1_hits
        self._stats["l2Hits"] += l2_hits

        self.logger.info(
            "Two-layer batch",
            total=len(keys),
            l1_hits=l1_hits,
            l2_hits=l2_hits,
            db=len(db_check),
            duration_ms=round((time.perf_counter() - start) * 1000, 2)
        )

        return BatchResult(
            values=[found.get(key) for key in keys],
            cache_hits=l1_hits + l2_hits,
            cache_misses=len(db_check),
        )

    async def invalidate_pattern(self, pattern: str, *, strict: bool = False) -> int:
        count = self.l1.delete_pattern(self._l1_key(pattern))
        if self.l2 is not None:
            count += await self.l2.invalidate_pattern(pattern, strict=strict)
        self.logger.debug("Invalidated pattern", pattern=pattern, count=count)
        return count

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["totalRequests"]
        hits = self._stats["l1Hits"] + self._stats["l2Hits"]

        def rate(value: int) -> str:
            return f"{value / total * 100:.2f}%" if total else "0%"

        return {
            **self._stats,
            "hitRate": rate(hits),
            "l1HitRate": rate(self._stats["l1Hits"]),
            "l2HitRate": rate(self._stats["l2Hits"]),
            "memory": self.l1.get_stats(),
        }

    def reset_stats(self):
        self._stats = self._empty_stats()
