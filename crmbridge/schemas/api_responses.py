"""
API response schemas for the webhook and admin endpoints.
"""
from typing import Optional
from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Always returned with 200 so providers never disable the webhook."""
    status: str  # queued, accepted
    job_id: Optional[str] = None


class WebhookEndpointInfo(BaseModel):
    provider: str
    endpoint: str
    method: str = "POST"
    content_type: str
    status: str = "active"
    description: str = ""


class QueueStatsResponse(BaseModel):
    queue_size: int
    active_jobs: int
    concurrency: int
    oldest_job_age_ms: Optional[int] = None
    completed: int = 0
    failed: int = 0
    retried: int = 0
    running: bool = False


class ClearCachesResponse(BaseModel):
    status: str
    keys_removed: int


class MetadataRefreshResponse(BaseModel):
    status: str
    tenant_id: str
    provider: str
    counts: dict[str, int]


class IntegrationCheckResponse(BaseModel):
    tenant_id: str
    results: dict[str, bool]  # provider -> connection ok
