"""
Event-driven cache invalidation.
"""

from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING

from shared.logging import get_logger
from .events import (
    ArticleCreated,
    ArticleDeleted,
    ArticleUpdated,
    BulkImportCompleted,
    EventBus,
    UserDataChanged,
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..caching.cache_manager import CacheManager
    from ..caching.two_layer import TwoLayerCache


AGGREGATE_NAMESPACES = ("stats", "trends")
SEARCH_FIELDS = frozenset({"title", "summary"})
BULK_IMPORT_NAMESPACES = ("articles", "lists", "related", "tagcloud", "stats", "trends", "search")

# Which two-layer caches hold each kind of per-user data
USER_KIND_CACHES = {
    "favorites": ("favorites",),
    "read_status": ("views",),
    "recommendations": (),
    "all": ("favorites", "views"),
}


class CacheInvalidator:
    """Drops the cache entries that depend on a changed entity.

    Every hook is best effort: failures are logged and counted, never
    raised, and TTL expiry bounds how long a missed entry stays stale.
    """

    def __init__(
        self,
        manager: "CacheManager",
        two_layer_caches: Optional[Dict[str, "TwoLayerCache"]] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.manager = manager
        self.two_layer_caches = two_layer_caches or {}
        self.metrics = metrics
        self.logger = get_logger("cache.invalidator")

    def subscribe(self, bus: EventBus):
        bus.subscribe(ArticleCreated, self._handle_created)
        bus.subscribe(ArticleUpdated, self._handle_updated)
        bus.subscribe(ArticleDeleted, self._handle_deleted)
        bus.subscribe(BulkImportCompleted, self._handle_bulk_import)
        bus.subscribe(UserDataChanged, self._handle_user_data)

    async def _handle_created(self, event: ArticleCreated):
        await self.on_article_created(event.article_id, event.category, event.source_id)

    async def _handle_updated(self, event: ArticleUpdated):
        await self.on_article_updated(event.article_id, event.changes)

    async def _handle_deleted(self, event: ArticleDeleted):
        await self.on_article_deleted(event.article_id)

    async def _handle_bulk_import(self, event: BulkImportCompleted):
        await self.on_bulk_import()

    async def _handle_user_data(self, event: UserDataChanged):
        await self.invalidate_user_cache(event.user_id, event.kind)

    async def on_article_created(self, article_id: Optional[str] = None,
                                 category: Optional[str] = None, source_id: Optional[str] = None) -> bool:
        steps = [self._clear_step(name) for name in ("lists", "tagcloud", *AGGREGATE_NAMESPACES)]
        return await self._run("article_created", steps, article_id=article_id, category=category,
                               source_id=source_id)

    async def on_article_updated(self, article_id: str, changes: Optional[Sequence[str]] = None) -> bool:
        return await self._run("article_updated", self._article_steps(article_id, changes),
                               article_id=article_id)

    async def on_article_deleted(self, article_id: str) -> bool:
        steps = self._article_steps(article_id, None)
        steps += [self._clear_step(name) for name in AGGREGATE_NAMESPACES]
        return await self._run("article_deleted", steps, article_id=article_id)

    async def on_bulk_import(self) -> bool:
        steps = [self._clear_step(name) for name in BULK_IMPORT_NAMESPACES]
        return await self._run("bulk_import", steps)

    async def invalidate_user_cache(self, user_id: str, kind: str = "all") -> bool:
        steps = [
            self._two_layer_pattern_step(name, f"{user_id}:*")
            for name in USER_KIND_CACHES.get(kind, ())
        ]
        return await self._run("user_data", steps, user_id=user_id, kind=kind)

    async def invalidate_all(self) -> bool:
        steps = [self._clear_step(name) for name in self.manager.namespaces()]
        steps += [self._l1_clear_step(name) for name in self.two_layer_caches]
        return await self._run("all", steps)

    def _article_steps(self, article_id: str, changes: Optional[Sequence[str]]) -> List[Callable[[], Awaitable]]:
        steps: List[Callable[[], Awaitable]] = [
            self._delete_step("articles", f"article:{article_id}"),
            self._delete_step("related", f"related:{article_id}"),
        ]
        steps += [
            self._two_layer_pattern_step(name, f"*:{article_id}")
            for name in self.two_layer_caches
        ]
        steps.append(self._clear_step("lists"))
        if changes and SEARCH_FIELDS.intersection(changes):
            steps.append(self._clear_step("search"))
        return steps

    def _delete_step(self, namespace: str, key: str) -> Callable[[], Awaitable]:
        async def step():
            if namespace in self.manager:
                await self.manager.namespace(namespace).delete(key, strict=True)
        return step

    def _clear_step(self, namespace: str) -> Callable[[], Awaitable]:
        async def step():
            if namespace in self.manager:
                await self.manager.clear_namespace(namespace, strict=True)
        return step

    def _two_layer_pattern_step(self, name: str, pattern: str) -> Callable[[], Awaitable]:
        async def step():
            cache = self.two_layer_caches.get(name)
            if cache is not None:
                await cache.invalidate_pattern(pattern, strict=True)
        return step

    def _l1_clear_step(self, name: str) -> Callable[[], Awaitable]:
        async def step():
            self.two_layer_caches[name].l1.clear()
        return step

    async def _run(self, event: str, steps: Iterable[Callable[[], Awaitable]], **context) -> bool:
        """Run every step even if earlier ones fail; True when all succeeded.

        ``event`` becomes the ``hook`` log field; structlog reserves ``event``
        for the message.
        """
        failures = 0
        for step in steps:
            try:
                await step()
            except Exception as e:
                failures += 1
                self.logger.error("Cache invalidation step failed", hook=event, error=str(e), **context)

        outcome = "success" if failures == 0 else "error"
        if self.metrics:
            self.metrics.increment_counter("cache_invalidations_total", event=event, outcome=outcome)

        if failures:
            self.logger.warning("Cache invalidation incomplete, relying on TTL expiry",
                                hook=event, failures=failures, **context)
        else:
            self.logger.info("Cache invalidated", hook=event, **context)
        return failures == 0
