"""
Namespaced Redis cache with hit/miss statistics.
"""

import json
import time
from typing import Any, Dict, Generic, Iterable, Mapping, Optional, Tuple, TypeVar, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import CacheBackendError, SerializationError, ValidationError
from .client import CacheClient
from .serialization import CacheCodec, CachedEntry, codec_for
from ..models import NamespaceStats

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


T = TypeVar("T")

DEFAULT_KEY_PREFIX = "@techtrend/cache"
DEFAULT_TTL = 3600


_KEY_ESCAPES = (("%", "%25"), (":", "%3A"), ("=", "%3D"))


def _escape(text: str) -> str:
    for char, replacement in _KEY_ESCAPES:
        text = text.replace(char, replacement)
    return text


def _canonical(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return str(value)


def generate_cache_key(base: str, *, prefix: Optional[str] = None,
                       params: Optional[Mapping[str, Any]] = None) -> str:
    """Derive a deterministic key from a base name and query parameters.

    Parameters are sorted by name, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` map to the same key. ``None`` values are skipped.
    ``%``, ``:`` and ``=`` inside names and values are percent-escaped, so
    a value can never pose as a separator.

        >>> generate_cache_key("articles", prefix="api", params={"page": 2, "tag": "ai"})
        'api:articles:page=2:tag=ai'
    """
    parts = [prefix, base] if prefix else [base]
    if params:
        for name in sorted(params):
            value = params[name]
            if value is None:
                continue
            parts.append(f"{_escape(str(name))}={_escape(_canonical(value))}")
    return ":".join(parts)


class KeyedCache(Generic[T]):
    """One cache namespace over Redis.

    ``get`` never raises: backend failures and undecodable payloads count as
    misses so callers always fall back to recomputation.
    """

    def __init__(
        self,
        client: CacheClient,
        namespace: str,
        *,
        default_ttl: int = DEFAULT_TTL,
        codec: Optional[CacheCodec] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.client = client
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.codec: CacheCodec = codec or codec_for()
        self.key_prefix = key_prefix
        self.metrics = metrics
        self.logger = get_logger(f"cache.keyed.{namespace}")
        self._stats = NamespaceStats()

    def full_key(self, key: str) -> str:
        """Redis key for a namespaced key."""
        return f"{self.key_prefix}:{self.namespace}:{key}"

    @staticmethod
    def generate_cache_key(base: str, *, prefix: Optional[str] = None,
                           params: Optional[Mapping[str, Any]] = None) -> str:
        return generate_cache_key(base, prefix=prefix, params=params)

    def _record(self, hit: bool):
        if hit:
            self._stats.hits += 1
            if self.metrics:
                self.metrics.increment_counter("cache_hits_total", namespace=self.namespace)
        else:
            self._stats.misses += 1
            if self.metrics:
                self.metrics.increment_counter("cache_misses_total", namespace=self.namespace)

    def _record_error(self, operation: str, exc: Exception):
        self._stats.errors += 1
        self.logger.error("Cache backend error", operation=operation, error=str(exc))
        if self.metrics:
            self.metrics.increment_counter("cache_errors_total", namespace=self.namespace, operation=operation)

    def _decode_entry(self, key: str, payload: Optional[str]) -> Optional[CachedEntry[T]]:
        if payload is None:
            return None
        try:
            return self.codec.decode_entry(payload)
        except SerializationError as exc:
            self.logger.warning("Discarding undecodable cache entry", key=key, error=exc.message)
            return None

    def _decode(self, key: str, payload: Optional[str]) -> Optional[T]:
        entry = self._decode_entry(key, payload)
        return entry.value if entry is not None else None

    async def get(self, key: str) -> Optional[T]:
        """Get a value; ``None`` means absent, expired or unreadable."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_entry(self, key: str) -> Optional[CachedEntry[T]]:
        """Like ``get`` but also returns when the entry was written."""
        try:
            payload = await self.client.get(self.full_key(key))
        except CacheBackendError as exc:
            self._record_error("get", exc)
            self._record(hit=False)
            return None

        entry = self._decode_entry(key, payload)
        self._record(hit=entry is not None)
        self.logger.debug("Cache lookup", key=key, hit=entry is not None)
        return entry

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[T]]:
        """Get several keys with one MGET; each key counts as one lookup."""
        keys = list(keys)
        if not keys:
            return {}

        try:
            payloads = await self.client.mget([self.full_key(k) for k in keys])
        except CacheBackendError as exc:
            self._record_error("mget", exc)
            for _ in keys:
                self._record(hit=False)
            return {key: None for key in keys}

        results: Dict[str, Optional[T]] = {}
        for key, payload in zip(keys, payloads):
            value = self._decode(key, payload)
            self._record(hit=value is not None)
            results[key] = value
        return results

    async def set(self, key: str, value: T, ttl: Optional[int] = None) -> bool:
        """Store a value, overwriting any previous entry."""
        if value is None:
            raise ValidationError("Cannot cache None", {"namespace": self.namespace, "key": key})

        cache_ttl = ttl if ttl is not None else self.default_ttl
        try:
            payload = self.codec.encode(value, written_at=time.time())
        except SerializationError as exc:
            self.logger.error("Cannot encode cache value", key=key, error=exc.message)
            return False

        try:
            await self.client.set(self.full_key(key), payload, cache_ttl)
        except CacheBackendError as exc:
            self._record_error("set", exc)
            return False

        self.logger.debug("Cached value", key=key, ttl=cache_ttl)
        return True

    async def set_many(self, items: Iterable[Tuple[str, T]], ttl: Optional[int] = None) -> int:
        """Store several values; returns how many writes succeeded."""
        stored = 0
        for key, value in items:
            if await self.set(key, value, ttl):
                stored += 1
        return stored

    async def delete(self, key: str, *, strict: bool = False) -> bool:
        """Remove a key; deleting an absent key is not an error.

        With ``strict`` backend failures are raised instead of logged.
        """
        try:
            await self.client.delete(self.full_key(key))
            return True
        except CacheBackendError as exc:
            if strict:
                raise
            self._record_error("delete", exc)
            return False

    async def invalidate_pattern(self, pattern: str, *, strict: bool = False) -> int:
        """Delete keys of this namespace matching a glob pattern."""
        try:
            return await self.client.delete_pattern(self.full_key(pattern))
        except CacheBackendError as exc:
            if strict:
                raise
            self._record_error("invalidate", exc)
            return 0

    async def clear(self, *, strict: bool = False) -> int:
        """Delete every key of this namespace."""
        return await self.invalidate_pattern("*", strict=strict)

    def get_stats(self) -> Dict[str, Any]:
        return self._stats.to_dict()

    @property
    def stats(self) -> NamespaceStats:
        return self._stats

    def reset_stats(self):
        self._stats.reset()
        self.logger.info("Cache stats reset")

