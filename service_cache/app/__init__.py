"""
Cache service package for TechTrend.

The service owns the batch-loading and caching core used by the article,
favorites, recommendation and statistics endpoints:
- Namespaced Redis caches with hit/miss statistics and get-or-set population
- Request-scoped batch loaders with adaptive batch sizing
- Event-driven cache invalidation

Structure:
- app.main: FastAPI app, routes and lifecycle wiring.
- app.caching: Redis client, keyed caches, codecs, L1 cache, cache manager.
- app.dataloader: Batch loader, batch-size optimizer, status loaders.
- app.invalidation: Domain events and the cache invalidator.
- app.persistence: PostgreSQL article store backing the loaders.
"""
