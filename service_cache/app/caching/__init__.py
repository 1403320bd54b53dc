"""
Cache service caching package.

Provides the namespaced Redis caches, the process-local L1 cache and the
manager that reports their statistics. Every cache degrades to a miss when
Redis is unavailable; TTL expiry is the consistency backstop.
"""
