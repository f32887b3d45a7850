"""
Operator alerting for failures the engine cannot recover from on its own.

Channels:
1. Structured log (always) at ERROR/CRITICAL level
2. Webhook (optional) - Discord/Slack URL via ALERT_WEBHOOK_URL

Per-type cooldowns stop a failing CRM from flooding the channel. Cooldowns
live in Redis with an in-memory fallback when Redis is down.
"""
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "tenant_unresolved": 3600,  # misconfigured webhooks repeat on every delivery
}

_local_cooldowns: dict[str, float] = {}  # cooldown key -> monotonic expiry


class AlertType:
    """Alert type constants."""
    WEBHOOK_JOB_FAILED = "webhook_job_failed"
    TENANT_UNRESOLVED = "tenant_unresolved"
    LPTRACKER_AUTH_FAILED = "lptracker_auth_failed"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    extra: Optional[dict] = None,
    dedup_suffix: str = "",
) -> bool:
    """
    Send an alert through all configured channels.

    dedup_suffix narrows the cooldown (e.g. per tenant) so one noisy tenant
    does not mute alerts for the others. Returns False when suppressed.
    """
    if not await _acquire_cooldown(alert_type, dedup_suffix):
        return False

    from crmbridge.utils.logging import get_correlation_id
    cid = get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str, dedup_suffix: str = "") -> bool:
    """
    Atomically check-and-set the cooldown. Returns True if the alert should go out.
    Redis SET NX EX first, in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)
    cooldown_key = f"crmbridge:alert_cooldown:{alert_type}"
    if dedup_suffix:
        cooldown_key += f":{dedup_suffix}"

    try:
        from crmbridge.utils.redis_client import get_redis
        redis = await get_redis()
        acquired = await redis.set(cooldown_key, "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(cooldown_key, 0):
            return False
        _local_cooldowns[cooldown_key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Post the alert to the configured Discord/Slack webhook."""
    try:
        from crmbridge.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        marker = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(severity, "ℹ️")
        content = f"{marker} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert delivery failure should never crash the caller
        logger.warning("Failed to send webhook alert: %s", str(e))
