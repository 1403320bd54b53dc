"""
Cache-aside population for expensive aggregates.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

from shared.logging import get_logger
from .keyed_cache import KeyedCache


T = TypeVar("T")


class GetOrSetPopulator(Generic[T]):
    """Read a namespace, compute on miss, write back.

    With ``single_flight`` (the default) concurrent misses for one key share
    a single ``compute_fn`` call; every waiter gets the same value or the same
    exception. The computation runs in its own task, so cancelling one waiter,
    including the one that started it, leaves the others waiting. Errors are
    never cached and neither is a ``None`` result.

    With ``stale_after`` set, ``get_or_set_swr`` serves entries older than
    that many seconds immediately and refreshes them in the background.
    """

    def __init__(self, cache: KeyedCache[T], *, single_flight: bool = True,
                 stale_after: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.single_flight = single_flight
        self.stale_after = stale_after
        self._clock = clock
        self.logger = get_logger(f"cache.populator.{cache.namespace}")
        self._in_flight: Dict[str, "asyncio.Task[Optional[T]]"] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def get_or_set(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> Optional[T]:
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        return await self._compute(key, compute_fn, ttl)

    async def get_or_set_swr(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
        stale_after: Optional[float] = None,
    ) -> Optional[T]:
        """Stale-while-revalidate read.

        A fresh entry is returned as is. A stale one is returned too, and a
        background refresh is started unless one is already running for the
        key. A miss computes in the foreground like ``get_or_set``.
        """
        stale_after = stale_after if stale_after is not None else self.stale_after
        if stale_after is None:
            return await self.get_or_set(key, compute_fn, ttl)

        entry = await self.cache.get_entry(key)
        if entry is None:
            return await self._compute(key, compute_fn, ttl)

        age = None if entry.written_at is None else self._clock() - entry.written_at
        if age is not None and age < stale_after:
            return entry.value

        if key in self._in_flight:
            self.logger.debug("Revalidation already in progress", key=key)
        else:
            self.logger.debug("Serving stale entry, revalidating", key=key, age=age)
            self._start(key, compute_fn, ttl, background=True)
        return entry.value

    async def refresh(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> Optional[T]:
        """Recompute and overwrite regardless of what is cached."""
        return await self._compute_and_store(key, compute_fn, ttl)

    async def _compute(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int],
    ) -> Optional[T]:
        if not self.single_flight:
            return await self._compute_and_store(key, compute_fn, ttl)

        task = self._in_flight.get(key)
        if task is None:
            task = self._start(key, compute_fn, ttl)
        else:
            self.logger.debug("Joining in-flight computation", key=key)
        return await asyncio.shield(task)

    def _start(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int],
        *,
        background: bool = False,
    ) -> "asyncio.Task[Optional[T]]":
        task = asyncio.ensure_future(self._compute_and_store(key, compute_fn, ttl))
        self._in_flight[key] = task

        def settled(done: "asyncio.Task[Optional[T]]"):
            if self._in_flight.get(key) is done:
                del self._in_flight[key]
            if done.cancelled():
                return
            # Retrieved here as well so a flight nobody awaits does not warn on GC
            exc = done.exception()
            if exc is not None and background:
                self.logger.error("Background revalidation failed", key=key, error=str(exc))

        task.add_done_callback(settled)
        return task

    async def _compute_and_store(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        ttl: Optional[int],
    ) -> Optional[T]:
        value = await compute_fn()
        if value is None:
            self.logger.debug("Computed value is empty, not caching", key=key)
            return None

        await self.cache.set(key, value, ttl)
        return value
