"""
Internal webhook shapes.

NormalizedWebhook is what each provider normalizer produces from its raw
envelope. EventContext is the enriched, per-delivery record the rule engine
evaluates and maps from; it is discarded after the rules run.
"""
from typing import Any, Optional
from pydantic import BaseModel, Field


PROVIDER_AMOCRM = "amocrm"
PROVIDER_LPTRACKER = "lptracker"


class NormalizedWebhook(BaseModel):
    """Provider-neutral view of one webhook delivery."""
    provider: str
    entity_id: Optional[str] = None
    tenant_hint: Optional[str] = Field(
        default=None, description="AmoCRM account subdomain or LPTracker project id"
    )
    event_timestamp: Optional[str] = None
    action: Optional[str] = Field(default=None, description="add, status, update, delete, ...")
    fields: dict[str, Any] = Field(
        default_factory=dict, description="Delta fields carried by the webhook itself"
    )
    raw: dict[str, Any] = Field(default_factory=dict)


class EventContext(BaseModel):
    """Enriched event the rules are evaluated against."""
    provider: str
    tenant_id: str
    entity_id: str
    event_timestamp: Optional[str] = None
    action: Optional[str] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    webhook_fields: dict[str, Any] = Field(default_factory=dict)
    lead: Optional[dict[str, Any]] = None
    contacts: list[dict[str, Any]] = Field(default_factory=list)
    custom_fields: list[dict[str, Any]] = Field(
        default_factory=list, description="LPTracker flat custom field list"
    )


class MappingResult(BaseModel):
    """Output of the field mapper for one action and target provider."""
    contact_fields: dict[str, Any] = Field(default_factory=dict)
    lead_fields: dict[str, Any] = Field(default_factory=dict)
    notes: list[str] = Field(default_factory=list)
    tasks: list[str] = Field(default_factory=list)
    identity: dict[str, Any] = Field(
        default_factory=dict, description="Standard source values (name, phone, email) for search"
    )


class WebhookJob(BaseModel):
    """One queued webhook delivery."""
    id: str
    provider: str
    payload: dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    created_at: int = Field(..., description="Epoch milliseconds")
    retry_after: Optional[int] = Field(default=None, description="Epoch milliseconds")
    last_error: Optional[str] = None
