"""
Redis connection owner for the cache service.
"""

import asyncio
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.errors import CacheBackendError


DELETE_BATCH_SIZE = 1000
SCAN_COUNT = 100


class CacheClient:
    """Thin async wrapper over Redis with an explicit start/stop lifecycle.

    Every command failure is raised as ``CacheBackendError`` so callers can
    tell cache trouble apart from their own errors.
    """

    def __init__(self, redis_url: str, *, redis_client: Optional[redis.Redis] = None,
                 socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("cache.client")
        self._redis: Optional[redis.Redis] = redis_client

    async def start(self):
        """Open the connection pool and verify Redis answers."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=True,
                health_check_interval=30
            )

        if await self.ping():
            self.logger.info("Redis cache client started", redis_url=self.redis_url)
        else:
            # Caches run in pass-through mode until Redis comes back.
            self.logger.warning("Redis unreachable at startup", redis_url=self.redis_url)

    async def stop(self):
        """Close the connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache client stopped")

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            raise CacheBackendError("Cache client not started")
        return self._redis

    async def _execute(self, operation: str, command, *args, **kwargs) -> Any:
        try:
            return await command(*args, **kwargs)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendError(
                f"Redis {operation} failed: {exc}",
                {"operation": operation}
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        client = self._get_redis()
        value = await self._execute("get", client.get, key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        client = self._get_redis()
        await self._execute("set", client.set, key, value, ex=ttl)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        client = self._get_redis()
        values = await self._execute("mget", client.mget, keys)
        return [v.decode("utf-8") if isinstance(v, bytes) else v for v in values]

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = self._get_redis()
        return int(await self._execute("delete", client.delete, *keys))

    async def scan_keys(self, pattern: str) -> List[str]:
        """Collect keys matching a glob pattern with SCAN instead of KEYS."""
        client = self._get_redis()
        keys: List[str] = []
        try:
            async for key in client.scan_iter(match=pattern, count=SCAN_COUNT):
                keys.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise CacheBackendError(f"Redis scan failed: {exc}", {"operation": "scan"}) from exc
        return keys

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` in batches."""
        keys = await self.scan_keys(pattern)
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            deleted += await self.delete(*keys[start:start + DELETE_BATCH_SIZE])

        if deleted:
            self.logger.info("Cleared cache pattern", pattern=pattern, keys_count=deleted)
        return deleted

    async def ping(self) -> bool:
        """Check Redis health."""
        try:
            return bool(await self._get_redis().ping())
        except Exception as exc:
            self.logger.debug("Redis ping failed", error=str(exc))
            return False

    async def info(self) -> Dict[str, Any]:
        client = self._get_redis()
        return await self._execute("info", client.info, "memory")
