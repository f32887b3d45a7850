"""
Inbound CRM webhook endpoints.

Both providers disable (or retry-storm) webhooks that answer non-2xx, so
every POST here answers 200 whatever happens downstream. Deliveries go onto
the webhook queue; when the queue is disabled they run as a background task
through the fail-soft dispatcher entry points.
"""
import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request

from crmbridge.schemas.api_responses import WebhookAck, WebhookEndpointInfo
from crmbridge.schemas.webhook_payloads import PROVIDER_AMOCRM, PROVIDER_LPTRACKER

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _read_payload(request: Request) -> dict[str, Any]:
    """Form-encoded or JSON body as a flat dict. Unreadable bodies become {}."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            return body if isinstance(body, dict) else {"data": body}
        if "form" in content_type:
            form = await request.form()
            return {key: value for key, value in form.items()}
        raw = await request.body()
        if not raw:
            return {}
        body = json.loads(raw)
        return body if isinstance(body, dict) else {"data": body}
    except Exception as e:
        logger.warning("Unreadable webhook body (%s): %s", content_type or "no content-type", str(e))
        return {}


async def _accept(provider: str, request: Request, background_tasks: BackgroundTasks) -> WebhookAck:
    payload = await _read_payload(request)
    state = request.app.state
    queue = getattr(state, "webhook_queue", None)
    dispatcher = getattr(state, "dispatcher", None)

    try:
        if queue is not None and getattr(state, "queue_enabled", True):
            job_id = await queue.enqueue(provider, payload)
            return WebhookAck(status="queued", job_id=job_id)

        if dispatcher is not None:
            handler = (
                dispatcher.handle_amocrm_webhook
                if provider == PROVIDER_AMOCRM
                else dispatcher.handle_lptracker_webhook
            )
            background_tasks.add_task(handler, payload)
        else:
            logger.error("No webhook queue or dispatcher configured, %s delivery dropped", provider)
    except Exception as e:
        logger.error("Failed to accept %s webhook: %s", provider, str(e), exc_info=True)
    return WebhookAck(status="accepted")


@router.post("/amocrm", response_model=WebhookAck)
async def amocrm_webhook(request: Request, background_tasks: BackgroundTasks):
    """AmoCRM lead events (form-encoded, PHP-style bracketed keys)."""
    return await _accept(PROVIDER_AMOCRM, request, background_tasks)


@router.post("/lptracker", response_model=WebhookAck)
async def lptracker_webhook(request: Request, background_tasks: BackgroundTasks):
    """LPTracker lead events ({"data": "<JSON string>"}, JSON or form)."""
    return await _accept(PROVIDER_LPTRACKER, request, background_tasks)


@router.get("/amocrm", response_model=WebhookEndpointInfo)
async def amocrm_webhook_info(request: Request):
    return WebhookEndpointInfo(
        provider=PROVIDER_AMOCRM,
        endpoint=str(request.url_for("amocrm_webhook")),
        content_type="application/x-www-form-urlencoded",
        description="Configure in AmoCRM: Settings > Integrations > Webhooks, lead events",
    )


@router.get("/lptracker", response_model=WebhookEndpointInfo)
async def lptracker_webhook_info(request: Request):
    return WebhookEndpointInfo(
        provider=PROVIDER_LPTRACKER,
        endpoint=str(request.url_for("lptracker_webhook")),
        content_type="application/json",
        description="Configure in LPTracker project settings, lead events",
    )
