"""
Cache service for the TechTrend article platform.
"""

import asyncio
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Add shared directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import HTTPException, Query
from shared.base_service import BaseService
from shared.logging import set_user_context
from shared.errors import BatchLoadError, TechTrendException

from .caching.cache_manager import CacheManager, WarmEntry
from .caching.client import CacheClient
from .caching.warmer import CacheWarmer
from .dataloader.batch_optimizer import OptimizerConfig, OptimizerRegistry
from .dataloader.loaders import LoaderFactory
from .invalidation.events import (
    ArticleCreated,
    ArticleDeleted,
    ArticleUpdated,
    BulkImportCompleted,
    EventBus,
    UserDataChanged,
)
from .invalidation.invalidator import CacheInvalidator
from .models import (
    ArticleCreateEvent,
    ArticleStatus,
    ArticleStatusRequest,
    ArticleUpdateEvent,
    BulkImportEvent,
    FavoriteStatus,
    ViewStatus,
)
from .persistence.postgres import ArticleStore


OVERALL_STATS_KEY = "overall"
TAG_CLOUD_LIMIT = 50


class CacheService(BaseService):
    """Cache service implementation."""

    def __init__(self, cache_client: Optional[CacheClient] = None, store: Optional[ArticleStore] = None):
        super().__init__("cache", 8020)

        # Initialize components
        self.cache_client = cache_client or CacheClient(self.config.redis_url)
        self.store = store or ArticleStore(self.config.postgres_dsn)
        self.cache_manager = CacheManager(self.cache_client, self.config, metrics=self.metrics)

        self.optimizers = OptimizerRegistry(OptimizerConfig(
            min_batch_size=self.config.batch_min_size,
            max_batch_size=self.config.batch_max_size,
            initial_batch_size=self.config.batch_initial_size,
            sample_window=self.config.batch_sample_window,
            cooldown_seconds=self.config.batch_cooldown_seconds,
        ))
        for query_type in ("favorite", "view"):
            self.optimizers.get(query_type)

        self.loaders = LoaderFactory.from_manager(
            self.store, self.cache_manager, self.config, self.optimizers, self.metrics
        )

        self.warmer = CacheWarmer(
            self.cache_manager,
            self._warm_plan,
            tick_seconds=self.config.cache_warm_tick_seconds,
        )

        self.events = EventBus()
        self.invalidator = CacheInvalidator(self.cache_manager, self.loaders.two_layer_caches, self.metrics)
        self.invalidator.subscribe(self.events)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_cache_routes()
        self._setup_loader_routes()
        self._setup_event_routes()

    def _warm_plan(self) -> List[WarmEntry]:
        """Dashboard aggregates kept warm."""
        intervals = self.config.cache_warm_intervals
        return [
            WarmEntry("stats", OVERALL_STATS_KEY, self.store.overall_stats,
                      interval=intervals.get("stats")),
            WarmEntry("tagcloud", f"top:{TAG_CLOUD_LIMIT}", lambda: self.store.tag_cloud(TAG_CLOUD_LIMIT),
                      interval=intervals.get("tagcloud")),
        ]

    def _require_namespace(self, namespace: str):
        if namespace not in self.cache_manager:
            raise HTTPException(status_code=404, detail=f"Unknown cache namespace: {namespace}")

    def _setup_cache_routes(self):
        """Set up cache statistics and maintenance routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "cache",
                "message": "TechTrend - Cache Service",
                "version": "1.0.0",
                "capabilities": ["namespaced_cache", "batch_loading", "adaptive_batching", "invalidation"],
                "namespaces": sorted(self.cache_manager.namespaces()),
            }

        @self.app.get("/cache/stats")
        async def cache_stats():
            """Hit/miss statistics for every namespace."""
            return await self.cache_manager.build_stats_report()

        @self.app.post("/cache/stats/reset")
        async def reset_cache_stats(namespace: Optional[str] = Query(None)):
            """Reset statistics for one namespace, or all of them."""
            if namespace:
                self._require_namespace(namespace)
            self.cache_manager.reset_stats(namespace)
            for name, two_layer in self.loaders.two_layer_caches.items():
                if namespace in (None, name):
                    two_layer.reset_stats()
            return {
                "status": "reset",
                "namespace": namespace or "all",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self.app.delete("/cache/{namespace}")
        async def clear_namespace(namespace: str):
            """Delete every entry of a namespace."""
            self._require_namespace(namespace)
            deleted = await self.cache_manager.clear_namespace(namespace)
            two_layer = self.loaders.two_layer_caches.get(namespace)
            if two_layer is not None:
                two_layer.l1.clear()
            return {"namespace": namespace, "deleted": deleted}

        @self.app.post("/cache/warm")
        async def warm_cache():
            """Pre-compute the dashboard aggregates."""
            return await self.cache_manager.warm(self._warm_plan())

        @self.app.get("/stats/overall")
        async def overall_stats():
            """Article, source and tag counts, served from the stats namespace."""
            return await self.cache_manager.get_or_set("stats", OVERALL_STATS_KEY, self.store.overall_stats)

    def _setup_loader_routes(self):
        """Set up batch-loading routes."""

        @self.app.get("/batch/metrics")
        async def batch_metrics():
            """Current batch sizes and latency statistics per loader."""
            return {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "optimizers": self.optimizers.all_stats(),
                "layers": {
                    name: two_layer.get_stats()
                    for name, two_layer in self.loaders.two_layer_caches.items()
                },
            }

        @self.app.post("/articles/status")
        async def article_status(request: ArticleStatusRequest):
            """Favorite and read status of a list of articles for one user."""
            set_user_context(request.user_id)
            favorite_loader = self.loaders.favorite_loader(request.user_id)
            view_loader = self.loaders.view_loader(request.user_id)

            try:
                favorites, views = await asyncio.gather(
                    favorite_loader.load_many(request.article_ids),
                    view_loader.load_many(request.article_ids),
                )
            except TechTrendException:
                raise
            except Exception as e:
                raise BatchLoadError(
                    f"Status lookup failed: {e}",
                    {"user_id": request.user_id, "articles": len(request.article_ids)}
                ) from e

            statuses = [
                ArticleStatus(
                    article_id=article_id,
                    favorite=favorite or FavoriteStatus(article_id=article_id),
                    view=view or ViewStatus(article_id=article_id),
                ).model_dump(mode="json", by_alias=True)
                for article_id, favorite, view in zip(request.article_ids, favorites, views)
            ]
            return {"userId": request.user_id, "statuses": statuses}

    def _setup_event_routes(self):
        """Set up domain event hooks that drive invalidation."""

        async def publish(event) -> Dict[str, Any]:
            handled = await self.events.publish(event)
            return {"event": type(event).__name__, "handlers": handled}

        @self.app.post("/events/articles/{article_id}/created")
        async def article_created(article_id: str, body: Optional[ArticleCreateEvent] = None):
            body = body or ArticleCreateEvent()
            return await publish(ArticleCreated(article_id, body.category, body.source_id))

        @self.app.post("/events/articles/{article_id}/updated")
        async def article_updated(article_id: str, body: Optional[ArticleUpdateEvent] = None):
            changes = tuple(body.changes) if body else ()
            return await publish(ArticleUpdated(article_id, changes))

        @self.app.post("/events/articles/{article_id}/deleted")
        async def article_deleted(article_id: str):
            return await publish(ArticleDeleted(article_id))

        @self.app.post("/events/bulk-import")
        async def bulk_import(body: Optional[BulkImportEvent] = None):
            imported = body.imported if body else 0
            return await publish(BulkImportCompleted(imported))

        @self.app.post("/events/users/{user_id}/{kind}")
        async def user_data_changed(user_id: str, kind: str):
            return await publish(UserDataChanged(user_id, kind))

    async def _check_dependencies(self):
        """Check cache service dependencies."""
        dependencies = {}

        # Check Redis
        try:
            dependencies["redis"] = "ok" if await self.cache_client.ping() else "error"
        except Exception:
            dependencies["redis"] = "error"

        # Check PostgreSQL
        try:
            dependencies["postgres"] = "ok" if await self.store.health_check() else "error"
        except Exception:
            dependencies["postgres"] = "error"

        return dependencies

    async def start(self):
        """Start cache service components."""
        await self.cache_client.start()
        await self.store.start()
        if self.config.cache_warm_on_startup:
            await self.warmer.warm_on_startup()
        if self.config.cache_warm_tick_seconds > 0:
            await self.warmer.start()
        self.logger.info("Cache service started", namespaces=len(self.cache_manager.namespaces()))

    async def stop(self):
        """Stop cache service components."""
        await self.warmer.stop()
        await self.store.stop()
        await self.cache_client.stop()
        self.logger.info("Cache service stopped")


def create_app():
    """Create cache service application."""
    service = CacheService()
    return service.app


if __name__ == "__main__":
    service = CacheService()
    service.run()
