"""
Admin endpoints - webhook queue monitoring, cache reset, CRM metadata
refresh and connection checks.

Guarded by the X-Admin-Key header when ADMIN_API_KEY is configured.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from crmbridge.config import get_settings
from crmbridge.integrations.crm_base import CRMError
from crmbridge.schemas.api_responses import (
    ClearCachesResponse,
    IntegrationCheckResponse,
    MetadataRefreshResponse,
    QueueStatsResponse,
)

logger = logging.getLogger(__name__)


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("/webhook-queue-stats", response_model=QueueStatsResponse)
async def webhook_queue_stats(request: Request):
    queue = getattr(request.app.state, "webhook_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Webhook queue is not running")
    return QueueStatsResponse(**queue.stats())


@router.post("/clear-caches", response_model=ClearCachesResponse)
async def clear_caches(request: Request):
    """Drop cached rule lists, CRM metadata and the LPTracker token."""
    cache = getattr(request.app.state, "crm_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache is not configured")
    removed = await cache.clear_all()
    logger.info("Admin cleared %d cache keys", removed)
    return ClearCachesResponse(status="ok", keys_removed=removed)


def _connectors(request: Request) -> dict:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher is not configured")
    return dispatcher.connectors


@router.post(
    "/tenants/{tenant_id}/{provider}/refresh-metadata",
    response_model=MetadataRefreshResponse,
)
async def refresh_metadata(tenant_id: str, provider: str, request: Request):
    """
    Reload pipelines, custom fields (and LPTracker projects/funnel) from the
    provider into storage and the metadata cache. AmoCRM phone/email
    mappings resolve their field ids from this data.
    """
    connector = _connectors(request).get(provider)
    if connector is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    try:
        counts = await connector.refresh_metadata(tenant_id)
    except CRMError as e:
        logger.warning(
            "Metadata refresh failed: %s", str(e),
            extra={"tenant_id": tenant_id, "provider": provider},
        )
        raise HTTPException(status_code=502, detail=str(e))
    logger.info(
        "Admin refreshed %s metadata", provider,
        extra={"tenant_id": tenant_id, "provider": provider},
    )
    return MetadataRefreshResponse(
        status="ok", tenant_id=tenant_id, provider=provider, counts=counts,
    )


@router.post("/tenants/{tenant_id}/test-integrations", response_model=IntegrationCheckResponse)
async def check_integrations(tenant_id: str, request: Request):
    results = {}
    for provider, connector in _connectors(request).items():
        results[provider] = await connector.test_connection(tenant_id)
    return IntegrationCheckResponse(tenant_id=tenant_id, results=results)
