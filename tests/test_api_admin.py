"""
Tests for crmbridge/api/admin.py and crmbridge/api/health.py.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from crmbridge.api.health import health_check
from crmbridge.api.router import api_router
from crmbridge.integrations.crm_base import AmoCRMError


def _settings(admin_api_key: str = ""):
    settings = MagicMock()
    settings.admin_api_key = admin_api_key
    return settings


def _make_app(**state) -> FastAPI:
    app = FastAPI()
    app.include_router(api_router)
    for key, value in state.items():
        setattr(app.state, key, value)
    return app


def _queue_stats():
    return {
        "queue_size": 3,
        "active_jobs": 1,
        "concurrency": 5,
        "oldest_job_age_ms": 1200,
        "completed": 10,
        "failed": 1,
        "retried": 2,
        "running": True,
    }


class TestQueueStats:
    def test_returns_stats(self):
        queue = MagicMock()
        queue.stats.return_value = _queue_stats()
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(_make_app(webhook_queue=queue)).get("/api/admin/webhook-queue-stats")
        assert response.status_code == 200
        assert response.json() == _queue_stats()

    def test_no_queue(self):
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(_make_app()).get("/api/admin/webhook-queue-stats")
        assert response.status_code == 503


class TestAdminKey:
    def test_missing_key_rejected(self):
        queue = MagicMock()
        queue.stats.return_value = _queue_stats()
        with patch("crmbridge.api.admin.get_settings", return_value=_settings("s3cret")):
            client = TestClient(_make_app(webhook_queue=queue))
            assert client.get("/api/admin/webhook-queue-stats").status_code == 401
            assert client.get(
                "/api/admin/webhook-queue-stats", headers={"X-Admin-Key": "wrong"}
            ).status_code == 401
            assert client.get(
                "/api/admin/webhook-queue-stats", headers={"X-Admin-Key": "s3cret"}
            ).status_code == 200


class TestClearCaches:
    def test_clears(self):
        cache = MagicMock()
        cache.clear_all = AsyncMock(return_value=4)
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(_make_app(crm_cache=cache)).post("/api/admin/clear-caches")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "keys_removed": 4}

    def test_no_cache(self):
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(_make_app()).post("/api/admin/clear-caches")
        assert response.status_code == 503


def _connector(counts=None, ok=True, error=None):
    connector = MagicMock()
    connector.refresh_metadata = AsyncMock(return_value=counts or {}, side_effect=error)
    connector.test_connection = AsyncMock(return_value=ok)
    return connector


def _dispatcher(**connectors):
    dispatcher = MagicMock()
    dispatcher.connectors = connectors
    return dispatcher


class TestRefreshMetadata:
    def test_refreshes_provider(self):
        amocrm = _connector(counts={"pipelines": 2, "contacts_fields": 5})
        app = _make_app(dispatcher=_dispatcher(amocrm=amocrm, lptracker=_connector()))
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(app).post("/api/admin/tenants/t1/amocrm/refresh-metadata")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "tenant_id": "t1",
            "provider": "amocrm",
            "counts": {"pipelines": 2, "contacts_fields": 5},
        }
        amocrm.refresh_metadata.assert_awaited_once_with("t1")

    def test_unknown_provider(self):
        app = _make_app(dispatcher=_dispatcher(amocrm=_connector()))
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(app).post("/api/admin/tenants/t1/bitrix/refresh-metadata")
        assert response.status_code == 404

    def test_crm_error_is_bad_gateway(self):
        amocrm = _connector(error=AmoCRMError("AmoCRM is not configured for tenant t1"))
        app = _make_app(dispatcher=_dispatcher(amocrm=amocrm))
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(app).post("/api/admin/tenants/t1/amocrm/refresh-metadata")
        assert response.status_code == 502
        assert "not configured" in response.json()["detail"]

    def test_no_dispatcher(self):
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(_make_app()).post("/api/admin/tenants/t1/amocrm/refresh-metadata")
        assert response.status_code == 503


class TestCheckIntegrations:
    def test_reports_each_provider(self):
        amocrm = _connector(ok=True)
        lptracker = _connector(ok=False)
        app = _make_app(dispatcher=_dispatcher(amocrm=amocrm, lptracker=lptracker))
        with patch("crmbridge.api.admin.get_settings", return_value=_settings()):
            response = TestClient(app).post("/api/admin/tenants/t1/test-integrations")

        assert response.status_code == 200
        assert response.json() == {"tenant_id": "t1", "results": {"amocrm": True, "lptracker": False}}
        amocrm.test_connection.assert_awaited_once_with("t1")
        lptracker.test_connection.assert_awaited_once_with("t1")


class TestHealth:
    async def test_liveness(self):
        result = await health_check()
        assert result["status"] == "healthy"
        assert "timestamp" in result

    def test_readiness(self, fake_redis):
        from crmbridge.database import get_db

        db = AsyncMock()
        queue = MagicMock()
        queue.stats.return_value = {"running": True}
        app = _make_app(webhook_queue=queue)

        async def _fake_db():
            yield db

        app.dependency_overrides[get_db] = _fake_db
        response = TestClient(app).get("/health/ready")
        assert response.json()["status"] == "ready"
        assert response.json()["checks"] == {"database": True, "redis": True, "webhook_queue": True}

    def test_readiness_degraded(self, fake_redis):
        from crmbridge.database import get_db

        db = AsyncMock()
        db.execute = AsyncMock(side_effect=ConnectionError("db down"))
        app = _make_app(queue_enabled=False)

        async def _fake_db():
            yield db

        app.dependency_overrides[get_db] = _fake_db
        body = TestClient(app).get("/health/ready").json()
        assert body["status"] == "degraded"
        assert body["checks"] == {"database": False, "redis": True, "webhook_queue": True}
