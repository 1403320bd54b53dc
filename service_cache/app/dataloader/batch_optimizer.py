"""
Adaptive batch-size tuning from observed batch latency and cache hit rate.
"""

import math
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, List, Optional

from shared.logging import get_logger
from shared.errors import ValidationError


@dataclass
class OptimizerConfig:
    """Tuning knobs; latencies in milliseconds, cooldown in seconds."""
    min_batch_size: int = 10
    max_batch_size: int = 200
    initial_batch_size: int = 50
    step_up: int = 10
    step_down: int = 20
    target_p95: float = 100.0
    target_p99: float = 200.0
    cooldown_seconds: float = 5.0
    sample_window: int = 100
    history_size: int = 50

    def validate(self):
        if self.min_batch_size < 1:
            raise ValidationError("min_batch_size must be at least 1")
        if self.max_batch_size < self.min_batch_size:
            raise ValidationError(
                "max_batch_size must not be below min_batch_size",
                {"min_batch_size": self.min_batch_size, "max_batch_size": self.max_batch_size}
            )
        if self.sample_window < 1:
            raise ValidationError("sample_window must be at least 1")


@dataclass
class BatchMetrics:
    """Measurements of one batched fetch."""
    batch_size: int
    latency_ms: float
    queue_wait_ms: float = 0.0
    item_count: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    timestamp: float = 0.0


@dataclass
class Adjustment:
    timestamp: float
    old_size: int
    new_size: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "oldSize": self.old_size,
            "newSize": self.new_size,
            "reason": self.reason,
        }


class BatchOptimizer:
    """Grows or shrinks the target batch size to hold a latency objective.

    Tail latency above target shrinks batches; headroom with a healthy cache
    hit rate grows them. The size never leaves
    ``[min_batch_size, max_batch_size]``.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None, *, name: str = "default",
                 clock: Callable[[], float] = time.time):
        self.config = config or OptimizerConfig()
        self.config.validate()
        self.name = name
        self._clock = clock
        self.logger = get_logger(f"dataloader.optimizer.{name}")

        self._current_batch_size = self._clamp(self.config.initial_batch_size)
        self._last_adjustment_time: Optional[float] = None
        self._metrics: Deque[BatchMetrics] = deque(maxlen=self.config.sample_window)
        self._history: Deque[Adjustment] = deque(maxlen=self.config.history_size)

    def _clamp(self, size: int) -> int:
        return max(self.config.min_batch_size, min(self.config.max_batch_size, size))

    def get_batch_size(self) -> int:
        return self._current_batch_size

    def record_metrics(self, metrics: BatchMetrics):
        if not metrics.timestamp:
            metrics = replace(metrics, timestamp=self._clock())
        self._metrics.append(metrics)

        if len(self._metrics) >= self.config.sample_window:
            self._maybe_adjust()

    def _maybe_adjust(self):
        now = self._clock()
        if (self._last_adjustment_time is not None
                and now - self._last_adjustment_time < self.config.cooldown_seconds):
            return

        stats = self.latency_stats()
        hit_rate = self.cache_hit_rate()
        queue_wait = self.average_queue_wait()
        cfg = self.config

        old_size = self._current_batch_size
        new_size = old_size
        reason = ""

        if stats["p99"] > cfg.target_p99:
            new_size = self._clamp(old_size - cfg.step_down)
            reason = f"P99 latency ({stats['p99']:.1f}ms) exceeds target ({cfg.target_p99:g}ms)"
        elif stats["p95"] > cfg.target_p95:
            new_size = self._clamp(old_size - cfg.step_down // 2)
            reason = f"P95 latency ({stats['p95']:.1f}ms) exceeds target ({cfg.target_p95:g}ms)"
        elif stats["p95"] < cfg.target_p95 * 0.5 and hit_rate > 0.4 and queue_wait < 10:
            new_size = self._clamp(old_size + cfg.step_up)
            reason = f"Headroom available: P95={stats['p95']:.1f}ms, cache={hit_rate * 100:.1f}%"

        # Proportional correction toward the p95 target
        proportional = math.floor((cfg.target_p95 - stats["p95"]) * 0.1)
        if abs(proportional) > 5:
            new_size = self._clamp(old_size + proportional)
            sign = "+" if proportional > 0 else ""
            reason = f"{reason} (proportional: {sign}{proportional})".strip()

        if new_size != old_size:
            self._current_batch_size = new_size
            self._last_adjustment_time = now
            self._history.append(Adjustment(now, old_size, new_size, reason))
            self.logger.info(
                "Batch size adjusted",
                old_size=old_size,
                new_size=new_size,
                reason=reason,
            )

    def latency_stats(self) -> Dict[str, float]:
        latencies = sorted(m.latency_ms for m in self._metrics)
        if not latencies:
            return {"p50": 0.0, "p95": 0.0, "p99": 0.0, "mean": 0.0, "count": 0}

        n = len(latencies)
        return {
            "p50": latencies[int(n * 0.5)],
            "p95": latencies[int(n * 0.95)],
            "p99": latencies[int(n * 0.99)],
            "mean": sum(latencies) / n,
            "count": n,
        }

    def cache_hit_rate(self) -> float:
        hits = sum(m.cache_hits for m in self._metrics)
        total = hits + sum(m.cache_misses for m in self._metrics)
        return hits / total if total else 0.0

    def average_queue_wait(self) -> float:
        if not self._metrics:
            return 0.0
        return sum(m.queue_wait_ms for m in self._metrics) / len(self._metrics)

    @property
    def adjustment_history(self) -> List[Adjustment]:
        return list(self._history)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "currentBatchSize": self._current_batch_size,
            "latencyStats": self.latency_stats(),
            "cacheHitRate": self.cache_hit_rate(),
            "avgQueueWait": self.average_queue_wait(),
            "recentAdjustments": [a.to_dict() for a in list(self._history)[-5:]],
        }

    def reset(self):
        self._current_batch_size = self._clamp(self.config.initial_batch_size)
        self._last_adjustment_time = None
        self._metrics.clear()
        self._history.clear()


# Per-query-type latency targets
QUERY_TYPE_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "favorite": {"target_p95": 50.0},
    "view": {"target_p95": 75.0},
}


class OptimizerRegistry:
    """One optimizer per query type, created on first use."""

    def __init__(self, base_config: Optional[OptimizerConfig] = None,
                 overrides: Optional[Dict[str, Dict[str, Any]]] = None,
                 clock: Callable[[], float] = time.time):
        self.base_config = base_config or OptimizerConfig()
        self.overrides = QUERY_TYPE_OVERRIDES if overrides is None else overrides
        self._clock = clock
        self._optimizers: Dict[str, BatchOptimizer] = {}

    def get(self, query_type: str) -> BatchOptimizer:
        optimizer = self._optimizers.get(query_type)
        if optimizer is None:
            config = replace(self.base_config, **self.overrides.get(query_type, {}))
            optimizer = BatchOptimizer(config, name=query_type, clock=self._clock)
            self._optimizers[query_type] = optimizer
        return optimizer

    def all_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: optimizer.get_stats() for name, optimizer in self._optimizers.items()}
