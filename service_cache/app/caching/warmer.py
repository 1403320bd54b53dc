"""
Startup and periodic cache warming.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.logging import get_logger
from .cache_manager import CacheManager, WarmEntry


class CacheWarmer:
    """Runs a warm plan once at startup and then on a fixed tick.

    Each tick refreshes only the entries whose ``interval`` has elapsed since
    they were last warmed. Warm failures are logged by the manager and never
    stop the loop.
    """

    def __init__(
        self,
        manager: CacheManager,
        plan: Callable[[], List[WarmEntry]],
        *,
        tick_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.manager = manager
        self.plan = plan
        self.tick_seconds = tick_seconds
        self._clock = clock
        self.logger = get_logger("cache.warmer")

        self._last_warmed: Dict[Tuple[str, str], float] = {}
        self.warming_task: Optional[asyncio.Task] = None
        self.running = False

    def should_warm(self, entry: WarmEntry, now: float) -> bool:
        if entry.interval is None:
            return False
        last = self._last_warmed.get((entry.namespace, entry.key))
        return last is None or now - last >= entry.interval

    async def _warm(self, entries: List[WarmEntry]) -> Dict[str, Any]:
        now = self._clock()
        summary = await self.manager.warm(entries)
        for entry in entries:
            self._last_warmed[(entry.namespace, entry.key)] = now
        return summary

    async def warm_on_startup(self) -> Dict[str, Any]:
        """Warm every entry of the plan."""
        summary = await self._warm(self.plan())
        self.logger.info("Startup cache warming completed", warmed=summary["warmed"],
                         errors=len(summary["errors"]))
        return summary

    async def warm_due(self) -> Dict[str, Any]:
        """Warm the entries whose interval has elapsed."""
        now = self._clock()
        due = [entry for entry in self.plan() if self.should_warm(entry, now)]
        return await self._warm(due)

    async def start(self):
        """Start periodic warming."""
        if self.warming_task is not None:
            self.logger.warning("Periodic warming already started")
            return
        self.running = True
        self.warming_task = asyncio.create_task(self._warming_loop())
        self.logger.info("Periodic cache warming started", tick_seconds=self.tick_seconds)

    async def stop(self):
        """Stop periodic warming."""
        self.running = False
        if self.warming_task:
            self.warming_task.cancel()
            try:
                await self.warming_task
            except asyncio.CancelledError:
                pass
            self.warming_task = None

        self.logger.info("Periodic cache warming stopped")

    async def _warming_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.tick_seconds)
                await self.warm_due()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in warming loop", error=str(e))
