"""Integration tests for the proxy and stats HTTP routes."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing

import httpx
import pytest
from starlette.testclient import TestClient

from server.app import create_starlette_app


def upstream_handler(request: httpx.Request) -> httpx.Response:
    """Fake upstream: echoes the query, fails on type=broken, drops on type=down."""
    api_type = request.url.params.get("type")
    if api_type == "down":
        raise httpx.ConnectError("connection refused", request=request)
    if api_type == "broken":
        return httpx.Response(500, json={"error": "upstream exploded"})
    return httpx.Response(
        200,
        json={"type": api_type, "id": request.url.params.get("id")},
        headers={"x-upstream": "yes"},
    )


@pytest.fixture
def make_client(make_settings, clock):
    """Build a TestClient whose upstream is served by ``upstream_handler``."""
    clients = []

    def _make(**overrides) -> TestClient:
        app = create_starlette_app(
            make_settings(**overrides),
            clock=clock,
            upstream_transport=httpx.MockTransport(upstream_handler),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


class TestApiProxy:
    """Tests for GET /api."""

    def test_success_is_proxied_and_counted(self, client):
        response = client.get("/api", params={"server": "netease", "type": "song", "id": "42"})

        assert response.status_code == 200
        assert response.json() == {"type": "song", "id": "42"}
        assert response.headers["x-upstream"] == "yes"

        stats = client.get("/stats").json()["data"]
        assert stats["totalCalls"] == 1
        assert stats["todayCalls"] == 1

    def test_upstream_error_passes_through_uncounted(self, client):
        response = client.get("/api", params={"type": "broken"})

        assert response.status_code == 500
        assert response.json() == {"error": "upstream exploded"}
        assert client.get("/stats").json()["data"]["totalCalls"] == 0

    def test_unreachable_upstream_returns_502(self, client):
        response = client.get("/api", params={"type": "down"})

        assert response.status_code == 502
        assert response.json()["success"] is False
        assert client.get("/stats").json()["data"]["totalCalls"] == 0

    def test_counts_accumulate(self, client):
        for _ in range(3):
            client.get("/api", params={"type": "url"})

        data = client.get("/stats").json()["data"]
        assert data["totalCalls"] == 3
        assert data["dailyCalls"] == {"2025-01-01": 3}
        assert data["hourlyCalls"] == {"2025-01-01-10": 3}


class TestStatsEndpoints:
    """Tests for the /stats surface."""

    def test_snapshot_shape(self, client):
        body = client.get("/stats").json()

        assert body["success"] is True
        data = body["data"]
        for field in ("totalCalls", "todayCalls", "weekCalls", "monthCalls", "nextReset", "timeToReset"):
            assert field in data
        assert data["storageType"] == "file"
        assert data["timeToReset"] == "14h 0m 0s"

    def test_reset_today(self, client):
        client.get("/api", params={"type": "song"})

        body = client.post("/stats/reset-today").json()

        assert body["success"] is True
        assert body["todayCalls"] == 0
        assert body["backupFile"].startswith("stats-backup-")
        data = client.get("/stats").json()["data"]
        assert data["todayCalls"] == 0
        assert data["totalCalls"] == 1

    def test_reset_week_and_month(self, client):
        client.get("/api", params={"type": "song"})

        assert client.post("/stats/reset-week").json()["scope"] == "week"
        assert client.post("/stats/reset-month").json()["scope"] == "month"

        data = client.get("/stats").json()["data"]
        assert data["weekCalls"] == 0
        assert data["monthCalls"] == 0
        assert data["todayCalls"] == 1

    def test_reset_all(self, client):
        client.get("/api", params={"type": "song"})

        body = client.post("/stats/reset-all").json()

        assert body["warning"] == "Total call count was reset as well!"
        assert client.get("/stats").json()["data"]["totalCalls"] == 0

    def test_reset_requires_post(self, client):
        assert client.get("/stats/reset-all").status_code == 405

    def test_storage_info_file(self, client):
        data = client.get("/stats/storage-info").json()["data"]

        assert data["storageType"] == "file"
        assert data["databaseConfigured"] is False
        assert data["databaseConnected"] is False
        assert data["stateless"] is False

    def test_storage_info_stateless(self, make_client):
        client = make_client(stateless_platform=True)
        data = client.get("/stats/storage-info").json()["data"]

        assert data["storageType"] == "memory"
        assert data["stateless"] is True

    def test_migrate_without_database(self, client):
        response = client.post("/stats/migrate-to-db")

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_migrate_with_database(self, make_client, tmp_path):
        (tmp_path / "stats.json").write_text(
            json.dumps({"totalCalls": 20, "dailyCalls": {"2025-01-01": 20}}),
            encoding="utf-8",
        )
        client = make_client(db_path=str(tmp_path / "stats.db"))

        body = client.post("/stats/migrate-to-db").json()

        assert body["success"] is True
        assert body["migrated"] is True
        assert body["totalCalls"] == 20
        assert client.get("/stats").json()["data"]["storageType"] == "database"

    def test_backups_listing(self, client):
        created = client.post("/stats/create-backup").json()
        assert created["success"] is True

        data = client.get("/stats/backups").json()["data"]

        assert data["totalBackups"] == 1
        assert data["maxBackups"] == 3
        assert data["backups"][0]["filename"] == created["backupFile"]

    def test_create_backup_disabled(self, make_client):
        client = make_client(stateless_platform=True)
        response = client.post("/stats/create-backup")

        assert response.status_code == 500
        assert response.json()["message"] == "Backup failed"


class TestAnalytics:
    """Tests for GET /stats/analytics."""

    def test_unavailable_on_file_storage(self, client):
        response = client.get("/stats/analytics")
        assert response.status_code == 400

    def test_invalid_hours(self, make_client, tmp_path):
        client = make_client(db_path=str(tmp_path / "stats.db"))

        assert client.get("/stats/analytics", params={"hours": "abc"}).status_code == 400
        assert client.get("/stats/analytics", params={"hours": "0"}).status_code == 400
        assert client.get("/stats/analytics", params={"hours": "169"}).status_code == 400

    def test_aggregates_logged_calls(self, make_client, tmp_path):
        client = make_client(db_path=str(tmp_path / "stats.db"))
        client.get("/api", params={"type": "song"})
        client.get("/api", params={"type": "broken"})

        body = client.get("/stats/analytics", params={"hours": "24"}).json()

        assert body["success"] is True
        data = body["data"]
        assert data["totalRequests"] == 2
        assert data["statusCodes"] == {"200": 1, "500": 1}
        endpoints = {row["endpoint"] for row in data["topEndpoints"]}
        assert endpoints == {"/api?type=song", "/api?type=broken"}

    def test_storage_failure_is_reported(self, make_client, tmp_path):
        db_path = tmp_path / "stats.db"
        client = make_client(db_path=str(db_path))
        with closing(sqlite3.connect(db_path)) as conn:
            conn.execute("DROP TABLE api_call_logs")
            conn.commit()

        response = client.get("/stats/analytics")

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["message"].startswith("Failed to compute analytics")


class TestMiscRoutes:
    def test_health(self, client):
        assert client.get("/health").json() == {
            "status": "healthy",
            "server": "meting-proxy",
            "version": "test",
        }

    def test_root_index(self, client):
        client.get("/api", params={"type": "song"})
        data = client.get("/").json()

        assert data["totalCalls"] == 1
        assert "/stats" in data["endpoints"]

    def test_unknown_path(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.text == "Not Found"

    def test_cors_headers(self, client):
        response = client.get("/health", headers={"Origin": "https://example.com"})
        assert response.headers["access-control-allow-origin"] == "*"