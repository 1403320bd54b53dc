"""
Shared configuration management for the TechTrend cache layer.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TECHTREND_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/techtrend")

    # Cache
    cache_key_prefix: str = Field(default="@techtrend/cache")
    cache_default_ttl: int = Field(default=3600)
    cache_ttls: Dict[str, int] = Field(default_factory=lambda: {
        "stats": 3600,
        "trends": 1800,
        "favorites": 60,
        "views": 60,
        "tagcloud": 1800,
        "articles": 300,
        "lists": 300,
        "related": 600,
        "search": 600,
    })
    cache_single_flight: bool = Field(default=True)
    # Seconds after which an entry is served stale and refreshed in the background
    cache_stale_after: Dict[str, int] = Field(default_factory=lambda: {
        "stats": 600,
        "trends": 600,
        "tagcloud": 600,
    })
    recommendation_min_requests: int = Field(default=100)

    # Cache warming
    cache_warm_concurrency: int = Field(default=5)
    cache_warm_on_startup: bool = Field(default=True)
    cache_warm_tick_seconds: float = Field(default=600.0)
    cache_warm_intervals: Dict[str, int] = Field(default_factory=lambda: {
        "stats": 3600,
        "tagcloud": 1800,
    })

    # Process-local L1 cache in front of Redis for loaders
    memory_cache_max_size: int = Field(default=1000)
    memory_cache_ttl: int = Field(default=30)

    # Batch loading
    batch_timeout_seconds: float = Field(default=5.0)
    batch_min_size: int = Field(default=10)
    batch_max_size: int = Field(default=200)
    batch_initial_size: int = Field(default=50)
    batch_sample_window: int = Field(default=100)
    batch_cooldown_seconds: float = Field(default=5.0)

    def ttl_for(self, namespace: str) -> int:
        """TTL in seconds for a cache namespace."""
        return self.cache_ttls.get(namespace, self.cache_default_ttl)

    def stale_after_for(self, namespace: str) -> Optional[int]:
        return self.cache_stale_after.get(namespace)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
