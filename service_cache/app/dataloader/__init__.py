"""
Request-scoped batch loading with adaptive batch sizes.
"""
