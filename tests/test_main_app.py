"""
Tests for crmbridge/main.py - app factory, correlation IDs and lifespan wiring.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from crmbridge.main import create_app, lifespan
from crmbridge.services.crm_cache import CrmCache
from crmbridge.services.dispatcher import WebhookDispatcher
from crmbridge.workers.webhook_queue import InMemoryWebhookQueue


def _make_settings(**overrides):
    """Real Settings with test overrides."""
    from crmbridge.config import Settings
    settings = Settings()
    for key, value in {"log_level": "WARNING", "app_env": "test", **overrides}.items():
        setattr(settings, key, value)
    return settings


class TestCreateApp:
    def test_routes_registered(self):
        with (
            patch("crmbridge.main.get_settings", return_value=_make_settings()),
            patch("crmbridge.main.configure_structured_logging"),
        ):
            app = create_app()

        assert isinstance(app, FastAPI)
        assert app.url_path_for("amocrm_webhook") == "/api/webhooks/amocrm"
        assert app.url_path_for("lptracker_webhook") == "/api/webhooks/lptracker"
        assert app.url_path_for("health_check") == "/health"
        assert app.url_path_for("webhook_queue_stats") == "/api/admin/webhook-queue-stats"

    def test_correlation_id_header(self):
        with (
            patch("crmbridge.main.get_settings", return_value=_make_settings()),
            patch("crmbridge.main.configure_structured_logging"),
        ):
            app = create_app()

        client = TestClient(app)
        echoed = client.get("/health", headers={"X-Correlation-ID": "abc123"})
        assert echoed.headers["X-Correlation-ID"] == "abc123"
        generated = client.get("/health")
        assert len(generated.headers["X-Correlation-ID"]) == 32


class TestLifespan:
    async def test_wires_queue_dispatcher_and_cache(self):
        app = FastAPI()
        settings = _make_settings(queue_concurrency=3)
        close_redis = AsyncMock()
        dispose_engine = AsyncMock()

        with (
            patch("crmbridge.main.get_settings", return_value=settings),
            patch("crmbridge.services.storage.DatabaseStorage", return_value=MagicMock()),
            patch("crmbridge.utils.redis_client.close_redis", new=close_redis),
            patch("crmbridge.database.dispose_engine", new=dispose_engine),
        ):
            async with lifespan(app):
                assert isinstance(app.state.dispatcher, WebhookDispatcher)
                assert isinstance(app.state.crm_cache, CrmCache)
                queue = app.state.webhook_queue
                assert isinstance(queue, InMemoryWebhookQueue)
                assert queue.concurrency == 3
                assert queue.stats()["running"] is True

        assert queue.stats()["running"] is False
        close_redis.assert_awaited_once()
        dispose_engine.assert_awaited_once()

    async def test_queue_disabled(self):
        app = FastAPI()
        settings = _make_settings(queue_enabled=False)

        with (
            patch("crmbridge.main.get_settings", return_value=settings),
            patch("crmbridge.services.storage.DatabaseStorage", return_value=MagicMock()),
            patch("crmbridge.utils.redis_client.close_redis", new=AsyncMock()),
            patch("crmbridge.database.dispose_engine", new=AsyncMock()),
        ):
            async with lifespan(app):
                assert app.state.queue_enabled is False
                assert not hasattr(app.state, "webhook_queue")
                assert app.state.dispatcher is not None
