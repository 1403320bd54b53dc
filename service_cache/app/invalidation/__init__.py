"""
Domain events and the cache invalidation that follows them.
"""
