"""
Provider-specific webhook payload normalizers.

Each function turns one raw delivery into a NormalizedWebhook. Provider
quirks (PHP-style bracketed form keys, JSON-in-a-string) stay inside this
module; nothing downstream looks at raw envelopes.
"""
import json
import logging
import re
from typing import Any, Optional

from crmbridge.schemas.webhook_payloads import (
    NormalizedWebhook,
    PROVIDER_AMOCRM,
    PROVIDER_LPTRACKER,
)

logger = logging.getLogger(__name__)

# Precedence when one delivery carries several event kinds
AMOCRM_LEAD_EVENTS = ("add", "status", "update", "delete")

_LEAD_KEY = re.compile(r"^leads\[(\w+)\]\[(\d+)\]\[([^\[\]]+)\]$")


def _empty_to_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _amocrm_lead_entries(payload: dict) -> dict[str, dict[str, Any]]:
    """
    First lead entry per event kind.

    Accepts flat form keys (leads[status][0][id]) and already-nested JSON
    ({"leads": {"status": [{"id": ...}]}}).
    """
    entries: dict[str, dict[str, Any]] = {}

    nested = payload.get("leads")
    if isinstance(nested, dict):
        for kind, items in nested.items():
            if isinstance(items, list) and items and isinstance(items[0], dict):
                entries[kind] = dict(items[0])
            elif isinstance(items, dict):
                first = items.get("0", items.get(0))
                if isinstance(first, dict):
                    entries[kind] = dict(first)

    for key, value in payload.items():
        match = _LEAD_KEY.match(str(key))
        if not match or match.group(2) != "0":
            continue
        entries.setdefault(match.group(1), {})[match.group(3)] = value
    return entries


def _amocrm_account(payload: dict) -> tuple[Optional[str], Optional[str]]:
    account = payload.get("account")
    if isinstance(account, dict):
        return _empty_to_none(account.get("subdomain")), _empty_to_none(account.get("id"))
    return (
        _empty_to_none(payload.get("account[subdomain]")),
        _empty_to_none(payload.get("account[id]")),
    )


def normalize_amocrm_webhook(payload: dict) -> NormalizedWebhook:
    """Normalize an AmoCRM lead webhook (form-encoded or nested JSON)."""
    entries = _amocrm_lead_entries(payload or {})
    subdomain, account_id = _amocrm_account(payload or {})

    action = None
    entry: dict[str, Any] = {}
    for kind in AMOCRM_LEAD_EVENTS:
        if kind in entries and entries[kind].get("id") not in (None, ""):
            action, entry = kind, entries[kind]
            break

    fields = {k: v for k, v in entry.items() if not isinstance(v, (dict, list))}
    if account_id:
        fields.setdefault("account_id", account_id)

    return NormalizedWebhook(
        provider=PROVIDER_AMOCRM,
        entity_id=_empty_to_none(entry.get("id")),
        tenant_hint=subdomain,
        event_timestamp=_empty_to_none(entry.get("last_modified") or entry.get("updated_at")),
        action=action,
        fields=fields,
        raw=dict(payload or {}),
    )


def _lptracker_inner(payload: dict) -> dict:
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            logger.warning("LPTracker webhook carried unparseable data field")
            return {}
    if isinstance(data, dict):
        return data
    if isinstance(payload, dict) and ("project_id" in payload or "id" in payload):
        return payload
    return {}


def normalize_lptracker_webhook(payload: dict) -> NormalizedWebhook:
    """Normalize an LPTracker webhook ({"data": "<JSON string>"})."""
    inner = _lptracker_inner(payload or {})

    stage = inner.get("stage")
    if isinstance(stage, dict):
        stage = stage.get("id")

    fields = {k: v for k, v in inner.items() if k != "contact"}
    if inner.get("project_id") not in (None, ""):
        fields["pipeline_id"] = inner.get("project_id")
    if stage not in (None, ""):
        fields["status_id"] = stage
    contact = inner.get("contact")
    if isinstance(contact, dict):
        fields["contact"] = contact

    return NormalizedWebhook(
        provider=PROVIDER_LPTRACKER,
        entity_id=_empty_to_none(inner.get("id") or inner.get("lead_id")),
        tenant_hint=_empty_to_none(inner.get("project_id")),
        event_timestamp=_empty_to_none(inner.get("action_timestamp")),
        action=_empty_to_none(inner.get("action")),
        fields=fields,
        raw=dict(payload or {}) if isinstance(payload, dict) else {},
    )


NORMALIZERS = {
    PROVIDER_AMOCRM: normalize_amocrm_webhook,
    PROVIDER_LPTRACKER: normalize_lptracker_webhook,
}
