"""
Shared fixtures for cache service tests.
"""

import fnmatch
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import BaseConfig
from service_cache.app.caching.client import CacheClient
from service_cache.app.models import FavoriteStatus, TagCloudEntry, ViewStatus


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio commands the client uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.commands = []
        self.fail = False
        self.closed = False

    def _command(self, name: str):
        self.commands.append(name)
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._command("get")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._command("set")
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def mget(self, keys):
        self._command("mget")
        return [self.data.get(key) for key in keys]

    async def delete(self, *keys):
        self._command("delete")
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def scan_iter(self, match="*", count=None):
        self._command("scan")
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        self._command("ping")
        return True

    async def info(self, section=None):
        self._command("info")
        return {
            "used_memory": 900,
            "used_memory_human": "900B",
            "used_memory_peak_human": "1.20K",
            "maxmemory": 1000,
        }

    async def aclose(self):
        self.closed = True


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []
        self.gauges = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))

    def counted(self, metric_name: str, **labels) -> int:
        return sum(
            1 for name, recorded in self.counters
            if name == metric_name and all(recorded.get(k) == v for k, v in labels.items())
        )


class FakeArticleStore:
    """Article store backed by dictionaries, recording every query."""

    def __init__(self, favorites=None, views=None):
        # {(user_id, article_id): favorited_at}
        self.favorites = favorites or {}
        # {(user_id, article_id): is_read}
        self.views = views or {}
        self.calls = []
        self.fail = None
        self.started = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def health_check(self):
        return self.started

    async def fetch_favorites(self, user_id, article_ids):
        self.calls.append(("favorites", user_id, list(article_ids)))
        if self.fail:
            raise self.fail
        return {
            article_id: FavoriteStatus(
                article_id=article_id,
                is_favorited=(user_id, article_id) in self.favorites,
                favorited_at=self.favorites.get((user_id, article_id)),
            )
            for article_id in article_ids
        }

    async def fetch_views(self, user_id, article_ids):
        self.calls.append(("views", user_id, list(article_ids)))
        if self.fail:
            raise self.fail
        statuses = {}
        for article_id in article_ids:
            if (user_id, article_id) in self.views:
                statuses[article_id] = ViewStatus(
                    article_id=article_id,
                    is_viewed=True,
                    is_read=self.views[(user_id, article_id)],
                )
            else:
                statuses[article_id] = ViewStatus(article_id=article_id)
        return statuses

    async def overall_stats(self):
        self.calls.append(("overall_stats",))
        return {"articleCount": 42, "sourceCount": 7, "tagCount": 12, "lastHour": {"count": 3}}

    async def tag_cloud(self, limit=50):
        self.calls.append(("tag_cloud", limit))
        return [TagCloudEntry(name="python", count=9, category="language")]

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache_client(fake_redis):
    return CacheClient("redis://localhost:6379/0", redis_client=fake_redis)


@pytest.fixture
def config():
    return BaseConfig(recommendation_min_requests=4)


@pytest.fixture
def dummy_metrics():
    return DummyMetrics()


@pytest.fixture
def article_store():
    return FakeArticleStore(
        favorites={("user-1", "art-1"): datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)},
        views={("user-1", "art-1"): True, ("user-1", "art-2"): False},
    )
