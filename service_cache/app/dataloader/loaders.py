"""
Favorite and view loaders for article lists.
"""

from typing import Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, TYPE_CHECKING

from shared.logging import get_logger
from .batch_loader import BatchLoader
from .batch_optimizer import OptimizerRegistry
from ..caching.memory_cache import MemoryCache
from ..caching.two_layer import TwoLayerCache
from ..models import BatchResult, FavoriteStatus, ViewStatus

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector
    from ..caching.cache_manager import CacheManager
    from ..persistence.postgres import ArticleStore


S = TypeVar("S")

StoreFetch = Callable[[str, List[str]], Awaitable[Mapping[str, S]]]


def user_article_key(user_id: str, article_id: str) -> str:
    return f"{user_id}:{article_id}"


class LoaderFactory:
    """Builds per-request loaders over process-wide two-layer caches."""

    def __init__(
        self,
        store: "ArticleStore",
        favorites_cache: TwoLayerCache[FavoriteStatus],
        views_cache: TwoLayerCache[ViewStatus],
        optimizers: OptimizerRegistry,
        metrics: Optional["MetricsCollector"] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.favorites_cache = favorites_cache
        self.views_cache = views_cache
        self.optimizers = optimizers
        self.metrics = metrics
        self.timeout = timeout
        self.logger = get_logger("dataloader.factory")

    @classmethod
    def from_manager(
        cls,
        store: "ArticleStore",
        manager: "CacheManager",
        config: "BaseConfig",
        optimizers: OptimizerRegistry,
        metrics: Optional["MetricsCollector"] = None,
    ) -> "LoaderFactory":
        """Wire L1 memory caches in front of the ``favorites``/``views`` namespaces."""

        def two_layer(prefix: str, namespace: str) -> TwoLayerCache:
            return TwoLayerCache(
                MemoryCache(max_size=config.memory_cache_max_size, default_ttl=config.memory_cache_ttl),
                manager.namespace(namespace),
                prefix,
                l1_ttl=config.memory_cache_ttl,
                l2_ttl=config.ttl_for(namespace),
            )

        return cls(
            store,
            two_layer("favorite", "favorites"),
            two_layer("view", "views"),
            optimizers,
            metrics=metrics,
            timeout=config.batch_timeout_seconds,
        )

    @property
    def two_layer_caches(self) -> Dict[str, TwoLayerCache]:
        return {"favorites": self.favorites_cache, "views": self.views_cache}

    def favorite_loader(self, user_id: str) -> BatchLoader[str, FavoriteStatus]:
        return self._build("favorite", user_id, self.favorites_cache, self.store.fetch_favorites)

    def view_loader(self, user_id: str) -> BatchLoader[str, ViewStatus]:
        return self._build("view", user_id, self.views_cache, self.store.fetch_views)

    def _build(self, kind: str, user_id: str, cache: TwoLayerCache[S],
               fetch: StoreFetch) -> BatchLoader[str, S]:
        prefix_len = len(user_id) + 1

        async def fetch_missing(keys: List[str]) -> Dict[str, S]:
            article_ids = [key[prefix_len:] for key in keys]
            rows = await fetch(user_id, article_ids)
            return {user_article_key(user_id, article_id): status for article_id, status in rows.items()}

        async def batch_fn(article_ids: List[str]) -> BatchResult[S]:
            keys = [user_article_key(user_id, article_id) for article_id in article_ids]
            return await cache.batch_load(keys, fetch_missing)

        return BatchLoader(
            batch_fn,
            name=kind,
            optimizer=self.optimizers.get(kind),
            timeout=self.timeout,
            metrics=self.metrics,
        )
