"""
Request-scoped batching loader.

Every ``load`` issued during one pass of the event loop lands in the same
window; the window is dispatched on the next pass with one backend call per
chunk of distinct keys.
"""

import asyncio
import time
from collections.abc import Mapping, Sequence
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Set, Tuple, TypeVar, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import BatchLoadError, BatchTimeoutError
from .batch_optimizer import BatchMetrics, BatchOptimizer
from ..models import BatchResult

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

BatchFn = Callable[[List[K]], Awaitable[Any]]


class BatchLoader(Generic[K, V]):
    """Coalesces individual key lookups into batched backend calls.

    Create one loader per request. Within a window duplicate keys share one
    future, so ``batch_fn`` sees each key at most once. If any chunk of a
    window fails, every pending lookup of that window fails with the same
    exception.
    """

    def __init__(
        self,
        batch_fn: BatchFn,
        *,
        name: str = "loader",
        max_batch_size: Optional[int] = None,
        optimizer: Optional[BatchOptimizer] = None,
        timeout: Optional[float] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_batch_size is not None and max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self._batch_fn = batch_fn
        self.name = name
        self.max_batch_size = max_batch_size
        self.optimizer = optimizer
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger(f"dataloader.{name}")

        self._queue: Dict[K, "asyncio.Future[Optional[V]]"] = {}
        self._window_opened_at = 0.0
        self._scheduled: Optional[asyncio.Handle] = None
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def pending_count(self) -> int:
        """Distinct keys waiting for the next dispatch."""
        return len(self._queue)

    def load(self, key: K) -> "asyncio.Future[Optional[V]]":
        """Queue a key and return a future for its value."""
        loop = asyncio.get_running_loop()

        future = self._queue.get(key)
        if future is None:
            future = loop.create_future()
            self._queue[key] = future

        if self._scheduled is None:
            self._window_opened_at = time.perf_counter()
            self._scheduled = loop.call_soon(self._on_window_closed)
        return future

    async def load_many(self, keys: Sequence[K]) -> List[Optional[V]]:
        """Load several keys at once; results follow ``keys``, duplicates included."""
        futures = [self.load(key) for key in keys]
        if not futures:
            return []
        await self.dispatch()
        return list(await asyncio.gather(*futures))

    async def dispatch(self):
        """Dispatch the open window now instead of on the next loop pass."""
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        await self._dispatch_window(*self._take_window())

    def _on_window_closed(self):
        self._scheduled = None
        task = asyncio.get_running_loop().create_task(self._dispatch_window(*self._take_window()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _take_window(self) -> Tuple[Dict[K, "asyncio.Future[Optional[V]]"], float]:
        queue, self._queue = self._queue, {}
        return queue, self._window_opened_at

    def _batch_size(self, key_count: int) -> int:
        if self.max_batch_size is not None:
            return self.max_batch_size
        if self.optimizer is not None:
            size = self.optimizer.get_batch_size()
            if self.metrics:
                self.metrics.set_gauge("batch_size", size, loader=self.name)
            return size
        return max(1, key_count)

    async def _dispatch_window(self, queue: Dict[K, "asyncio.Future[Optional[V]]"], opened_at: float):
        keys = list(queue)
        if not keys:
            return

        size = self._batch_size(len(keys))
        chunks = [keys[i:i + size] for i in range(0, len(keys), size)]
        queue_wait_ms = (time.perf_counter() - opened_at) * 1000

        outcomes = await asyncio.gather(
            *(self._run_chunk(chunk, queue_wait_ms) for chunk in chunks),
            return_exceptions=True
        )

        failure = next((o for o in outcomes if isinstance(o, BaseException)), None)
        if failure is not None:
            self.logger.error(
                "Batch window failed",
                keys=len(keys),
                chunks=len(chunks),
                error=str(failure) or type(failure).__name__,
            )
            for future in queue.values():
                if future.done():
                    continue
                if isinstance(failure, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(failure)
            return

        for values in outcomes:
            for key, value in values.items():
                future = queue[key]
                if not future.done():
                    future.set_result(value)

    async def _run_chunk(self, chunk: List[K], queue_wait_ms: float) -> Dict[K, Optional[V]]:
        start = time.perf_counter()
        outcome = "success"
        hits = misses = 0
        try:
            if self.timeout is not None:
                raw = await asyncio.wait_for(self._batch_fn(chunk), timeout=self.timeout)
            else:
                raw = await self._batch_fn(chunk)
            values, hits, misses = self._normalise(chunk, raw)
            return values
        except asyncio.TimeoutError:
            outcome = "timeout"
            raise BatchTimeoutError(
                f"Batch load '{self.name}' timed out after {self.timeout}s",
                {"loader": self.name, "keys": len(chunk)}
            ) from None
        except Exception:
            outcome = "error"
            raise
        finally:
            latency = time.perf_counter() - start
            if self.metrics:
                self.metrics.increment_counter("batch_dispatch_total", loader=self.name, outcome=outcome)
                self.metrics.observe_histogram("batch_latency_seconds", latency, loader=self.name)
            if self.optimizer is not None:
                self.optimizer.record_metrics(BatchMetrics(
                    batch_size=len(chunk),
                    latency_ms=latency * 1000,
                    queue_wait_ms=queue_wait_ms,
                    item_count=len(chunk),
                    cache_hits=hits,
                    cache_misses=misses,
                ))
            self.logger.debug(
                "Batch dispatched",
                keys=len(chunk),
                outcome=outcome,
                duration_ms=round(latency * 1000, 2),
            )

    def _normalise(self, chunk: List[K], raw: Any) -> Tuple[Dict[K, Optional[V]], int, int]:
        hits = misses = 0
        if isinstance(raw, BatchResult):
            hits, misses = raw.cache_hits, raw.cache_misses
            raw = raw.values

        if isinstance(raw, Mapping):
            return {key: raw.get(key) for key in chunk}, hits, misses

        if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
            if len(raw) != len(chunk):
                raise BatchLoadError(
                    f"Batch function for '{self.name}' returned {len(raw)} values for {len(chunk)} keys",
                    {"loader": self.name, "expected": len(chunk), "received": len(raw)}
                )
            return dict(zip(chunk, raw)), hits, misses

        raise BatchLoadError(
            f"Batch function for '{self.name}' returned {type(raw).__name__}",
            {"loader": self.name}
        )
