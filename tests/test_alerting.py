"""
Tests for crmbridge/utils/alerting.py - cooldowns and webhook delivery.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crmbridge.utils import alerting
from crmbridge.utils.alerting import AlertType, send_alert


@pytest.fixture(autouse=True)
def _clear_local_cooldowns():
    alerting._local_cooldowns.clear()
    yield
    alerting._local_cooldowns.clear()


def _settings(url: str = ""):
    settings = MagicMock()
    settings.alert_webhook_url = url
    return settings


class TestCooldown:
    async def test_second_alert_is_suppressed(self, fake_redis):
        with patch("crmbridge.config.get_settings", return_value=_settings()):
            assert await send_alert(AlertType.WEBHOOK_JOB_FAILED, "first") is True
            assert await send_alert(AlertType.WEBHOOK_JOB_FAILED, "second") is False
        assert fake_redis.expiries["crmbridge:alert_cooldown:webhook_job_failed"] == 300

    async def test_dedup_suffix_separates_cooldowns(self, fake_redis):
        with patch("crmbridge.config.get_settings", return_value=_settings()):
            assert await send_alert(AlertType.WEBHOOK_JOB_FAILED, "a", dedup_suffix="amocrm") is True
            assert await send_alert(AlertType.WEBHOOK_JOB_FAILED, "b", dedup_suffix="lptracker") is True

    async def test_override_cooldown(self, fake_redis):
        with patch("crmbridge.config.get_settings", return_value=_settings()):
            await send_alert(AlertType.TENANT_UNRESOLVED, "who is this")
        assert fake_redis.expiries["crmbridge:alert_cooldown:tenant_unresolved"] == 3600

    async def test_in_memory_fallback(self):
        with patch("crmbridge.utils.redis_client.get_redis", new=AsyncMock(side_effect=ConnectionError("down"))), \
                patch("crmbridge.config.get_settings", return_value=_settings()):
            assert await send_alert(AlertType.LPTRACKER_AUTH_FAILED, "x") is True
            assert await send_alert(AlertType.LPTRACKER_AUTH_FAILED, "x") is False


class TestWebhookDelivery:
    async def test_posts_to_configured_url(self):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)

        with patch("crmbridge.config.get_settings", return_value=_settings("https://hooks.example.com/x")), \
                patch("httpx.AsyncClient", return_value=mock_client):
            await send_alert(AlertType.WEBHOOK_JOB_FAILED, "job died", extra={"tenant_id": "t1"})

        url = mock_client.post.call_args.args[0]
        content = mock_client.post.call_args.kwargs["json"]["content"]
        assert url == "https://hooks.example.com/x"
        assert "webhook_job_failed" in content
        assert "job died" in content
        assert "tenant_id: t1" in content

    async def test_delivery_failure_is_swallowed(self):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=ConnectionError("no route"))
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)

        with patch("crmbridge.config.get_settings", return_value=_settings("https://hooks.example.com/x")), \
                patch("httpx.AsyncClient", return_value=mock_client):
            assert await send_alert(AlertType.WEBHOOK_JOB_FAILED, "boom") is True
