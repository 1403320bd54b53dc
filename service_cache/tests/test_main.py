"""
Unit tests for the Cache service HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.logging import request_id_var
from service_cache.app.main import CacheService


class RecordingLogger:
    """Logger stand-in that remembers the request id active at each call."""

    def __init__(self):
        self.records = []

    def _record(self, level, event, **fields):
        self.records.append((level, event, request_id_var.get(), fields))

    def debug(self, event, **fields):
        self._record("debug", event, **fields)

    def info(self, event, **fields):
        self._record("info", event, **fields)

    def warning(self, event, **fields):
        self._record("warning", event, **fields)

    def error(self, event, **fields):
        self._record("error", event, **fields)


class TestCacheService:
    """Test cases for CacheService."""

    @pytest.fixture
    def cache_service(self, cache_client, article_store, monkeypatch):
        """Create CacheService with in-memory dependencies and no startup warming."""
        monkeypatch.setenv("TECHTREND_CACHE_WARM_ON_STARTUP", "false")
        return CacheService(cache_client=cache_client, store=article_store)

    @pytest.fixture
    def client(self, cache_service):
        """Create test client; entering it runs startup and shutdown."""
        with TestClient(cache_service.app) as test_client:
            yield test_client

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "cache"
        assert "stats" in data["namespaces"]

    def test_health_reports_dependencies(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"redis": "ok", "postgres": "ok"}

    def test_health_degraded_when_redis_down(self, client, fake_redis):
        fake_redis.fail = True

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["dependencies"]["redis"] == "error"

    def test_request_log_carries_request_id(self, cache_service, client, monkeypatch):
        recorder = RecordingLogger()
        monkeypatch.setattr(cache_service, "logger", recorder)

        client.get("/", headers={"X-Request-ID": "req-123"})

        request_logs = [r for r in recorder.records if r[1] == "HTTP request"]
        assert len(request_logs) == 1
        assert request_logs[0][2] == "req-123"
        assert request_logs[0][3]["status_code"] == 200

    def test_metrics_endpoint(self, client):
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_overall_stats_are_cached(self, client, article_store):
        first = client.get("/stats/overall")
        second = client.get("/stats/overall")

        assert first.status_code == 200
        assert first.json() == second.json()
        assert first.json()["articleCount"] == 42
        assert article_store.count("overall_stats") == 1

        stats = client.get("/cache/stats").json()
        assert stats["caches"]["stats"]["hits"] == 1
        assert stats["caches"]["stats"]["misses"] == 1

    def test_reset_stats(self, client):
        client.get("/stats/overall")

        response = client.post("/cache/stats/reset", params={"namespace": "stats"})

        assert response.status_code == 200
        assert response.json()["namespace"] == "stats"
        assert client.get("/cache/stats").json()["caches"]["stats"]["misses"] == 0

    def test_reset_unknown_namespace(self, client):
        response = client.post("/cache/stats/reset", params={"namespace": "nope"})

        assert response.status_code == 404

    def test_clear_namespace(self, client, article_store):
        client.get("/stats/overall")

        response = client.delete("/cache/stats")

        assert response.status_code == 200
        assert response.json() == {"namespace": "stats", "deleted": 1}
        client.get("/stats/overall")
        assert article_store.count("overall_stats") == 2

    def test_clear_unknown_namespace(self, client):
        assert client.delete("/cache/nope").status_code == 404

    def test_warm(self, client, article_store):
        response = client.post("/cache/warm")

        assert response.status_code == 200
        assert response.json()["warmed"] == 2
        client.get("/stats/overall")
        assert article_store.count("overall_stats") == 1

    def test_article_status(self, client, article_store):
        response = client.post("/articles/status", json={
            "user_id": "user-1",
            "article_ids": ["art-1", "art-2", "art-1"],
        })

        assert response.status_code == 200
        statuses = response.json()["statuses"]
        assert len(statuses) == 3
        assert statuses[0]["favorite"]["isFavorited"] is True
        assert statuses[0]["view"]["isRead"] is True
        assert statuses[1]["favorite"]["isFavorited"] is False
        assert statuses[2] == statuses[0]
        assert article_store.count("favorites") == 1
        assert article_store.count("views") == 1

    def test_article_status_backend_failure(self, client, article_store):
        article_store.fail = RuntimeError("database down")

        response = client.post("/articles/status", json={"user_id": "user-1", "article_ids": ["art-9"]})

        assert response.status_code == 502
        assert response.json()["code"] == "BATCH_LOAD_ERROR"

    def test_article_status_validation(self, client):
        response = client.post("/articles/status", json={"user_id": "", "article_ids": []})

        assert response.status_code == 422

    def test_batch_metrics(self, client):
        client.post("/articles/status", json={"user_id": "user-1", "article_ids": ["art-1"]})

        data = client.get("/batch/metrics").json()

        assert set(data["optimizers"]) == {"favorite", "view"}
        assert data["optimizers"]["favorite"]["currentBatchSize"] == 50
        assert data["optimizers"]["favorite"]["latencyStats"]["count"] == 1
        assert data["layers"]["favorites"]["totalRequests"] == 1

    def test_article_updated_event_reaches_invalidator(self, client):
        client.get("/stats/overall")

        response = client.post("/events/articles/art-1/updated", json={"changes": ["title"]})

        assert response.status_code == 200
        assert response.json() == {"event": "ArticleUpdated", "handlers": 1}

    def test_article_deleted_event_clears_stats(self, client, article_store):
        client.get("/stats/overall")

        client.post("/events/articles/art-1/deleted")
        client.get("/stats/overall")

        assert article_store.count("overall_stats") == 2

    def test_created_and_bulk_import_events(self, client):
        assert client.post("/events/articles/art-2/created", json={"category": "tech"}).json()["handlers"] == 1
        assert client.post("/events/bulk-import", json={"imported": 10}).json()["handlers"] == 1

    def test_user_event(self, client):
        assert client.post("/events/users/user-1/favorites").status_code == 200

    def test_user_event_unknown_kind(self, client):
        response = client.post("/events/users/user-1/bookmarks")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestCacheServiceWarming:
    """Startup and periodic warming tied to the service lifecycle."""

    @pytest.fixture
    def cache_service(self, cache_client, article_store, monkeypatch):
        monkeypatch.setenv("TECHTREND_CACHE_WARM_ON_STARTUP", "true")
        return CacheService(cache_client=cache_client, store=article_store)

    def test_startup_warms_dashboard_aggregates(self, cache_service, article_store):
        with TestClient(cache_service.app) as client:
            assert article_store.count("overall_stats") == 1
            assert article_store.count("tag_cloud") == 1

            client.get("/stats/overall")

            assert article_store.count("overall_stats") == 1
            assert cache_service.warmer.running

        assert not cache_service.warmer.running
        assert cache_service.warmer.warming_task is None
