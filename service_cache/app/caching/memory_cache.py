"""
Process-local LRU cache used as the first layer in front of Redis.
"""

import fnmatch
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from shared.errors import ValidationError


T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    data: T
    expires_at: float
    access_count: int = 0


class MemoryCache(Generic[T]):
    """Bounded in-memory cache with per-entry TTL and LRU eviction."""

    def __init__(self, max_size: int = 1000, default_ttl: float = 60,
                 clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValidationError("Memory cache max_size must be at least 1", {"max_size": max_size})
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "sets": 0, "deletes": 0}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None

        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._stats["misses"] += 1
            return None

        entry.access_count += 1
        self._entries.move_to_end(key)
        self._stats["hits"] += 1
        return entry.data

    def set(self, key: str, value: T, ttl: Optional[float] = None):
        ttl_seconds = ttl if ttl is not None else self.default_ttl

        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            # Least recently used sits at the front
            self._entries.popitem(last=False)
            self._stats["evictions"] += 1

        self._entries[key] = _Entry(data=value, expires_at=self._clock() + ttl_seconds)
        self._stats["sets"] += 1

    def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._stats["deletes"] += 1
        return True

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern."""
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        self._stats["deletes"] += len(matched)
        return len(matched)

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self):
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "size": len(self._entries),
            "maxSize": self.max_size,
            "hitRate": round(self._stats["hits"] / total * 100, 2) if total else 0.0,
        }
