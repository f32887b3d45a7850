"""
AmoCRM connector - REST API v4.

Auth: per-tenant long-lived API key sent as a Bearer token. The key is stored
Fernet-encrypted and decrypted right before each operation.
Base URL: https://{subdomain}.amocrm.ru (subdomain normalized from whatever
form the tenant saved).
AmoCRM answers 204 with no body when a search finds nothing.
"""
import logging
import time
from typing import Any, NamedTuple, Optional

import httpx

from crmbridge.integrations.crm_base import (
    AmoCRMError,
    CRMConnector,
    DEFAULT_CONTACT_NAME,
    DEFAULT_LEAD_NAME,
    SyncResult,
    is_retryable_status,
)
from crmbridge.schemas.sync_rule import SyncAction
from crmbridge.schemas.webhook_payloads import MappingResult, PROVIDER_AMOCRM
from crmbridge.services.field_mapper import metadata_fields
from crmbridge.services.storage import normalize_amocrm_subdomain
from crmbridge.utils.encryption import decrypt_credential

logger = logging.getLogger(__name__)

TIMEOUT = 10.0
TASK_DUE_SECONDS = 24 * 60 * 60
DEFAULT_TASK_TYPE_ID = 1  # call

METADATA_ENDPOINTS = (
    ("pipelines", "/api/v4/leads/pipelines"),
    ("leads_fields", "/api/v4/leads/custom_fields"),
    ("contacts_fields", "/api/v4/contacts/custom_fields"),
)


class _Account(NamedTuple):
    base_url: str
    headers: dict


def _as_int(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _embedded(data: Optional[dict], key: str) -> list:
    if not isinstance(data, dict):
        return []
    return (data.get("_embedded") or {}).get(key) or []


class AmoCRMConnector(CRMConnector):
    """AmoCRM API v4 connector."""

    provider = PROVIDER_AMOCRM

    def __init__(
        self,
        storage,
        cache,
        system_log=None,
        timeout: float = TIMEOUT,
        domain: str = "amocrm.ru",
    ):
        self._storage = storage
        self._cache = cache
        self._system_log = system_log
        self.timeout = timeout
        self.domain = domain

    def account_host(self, subdomain: str) -> str:
        return f"{normalize_amocrm_subdomain(subdomain, self.domain)}.{self.domain}"

    async def _account(self, tenant_id: str) -> _Account:
        settings = await self._storage.get_amocrm_settings(tenant_id)
        if not settings or not settings.get("is_active", True):
            raise AmoCRMError(f"AmoCRM is not configured for tenant {tenant_id}")
        api_key = decrypt_credential(settings.get("api_key"), "AmoCRM API key")
        if not api_key or not settings.get("subdomain"):
            raise AmoCRMError(f"AmoCRM credentials are incomplete for tenant {tenant_id}")
        return _Account(
            base_url=f"https://{self.account_host(settings['subdomain'])}",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def _request(
        self,
        account: _Account,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the AmoCRM API."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{account.base_url}{path}",
                    headers=account.headers,
                    json=json,
                    params=params,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise AmoCRMError(
                f"AmoCRM {method} {path} returned {status}",
                status_code=status,
                retryable=is_retryable_status(status),
            ) from e
        except httpx.TransportError as e:
            raise AmoCRMError(f"AmoCRM {method} {path} failed: {e}", retryable=True) from e

        if response.status_code == 204:
            return {}
        try:
            return response.json() or {}
        except ValueError:
            return {}

    # -- reads --

    async def get_lead(self, tenant_id: str, lead_id: str) -> dict:
        account = await self._account(tenant_id)
        return await self._request(
            account, "GET", f"/api/v4/leads/{lead_id}", params={"with": "contacts"},
        )

    async def get_lead_with_contacts(self, tenant_id: str, lead_id: str) -> tuple[dict, list[dict]]:
        """
        Lead detail plus every linked contact. One failing contact is logged
        and skipped; a failing lead fetch raises.
        """
        account = await self._account(tenant_id)
        lead = await self._request(
            account, "GET", f"/api/v4/leads/{lead_id}", params={"with": "contacts"},
        )
        contacts = []
        for ref in _embedded(lead, "contacts"):
            contact_id = ref.get("id") if isinstance(ref, dict) else None
            if not contact_id:
                continue
            try:
                contacts.append(
                    await self._request(account, "GET", f"/api/v4/contacts/{contact_id}")
                )
            except AmoCRMError as e:
                logger.warning(
                    "AmoCRM contact %s fetch failed: %s", contact_id, str(e),
                    extra={"tenant_id": tenant_id, "entity_id": str(lead_id)},
                )
        return lead, contacts

    async def _find_contact(self, account: _Account, query: str) -> Optional[dict]:
        data = await self._request(
            account, "GET", "/api/v4/contacts", params={"query": query, "with": "leads"},
        )
        contacts = _embedded(data, "contacts")
        return contacts[0] if contacts else None

    # -- sync --

    async def sync(
        self,
        tenant_id: str,
        mapped: MappingResult,
        search_by: str,
        action: SyncAction,
    ) -> SyncResult:
        account = await self._account(tenant_id)
        result = SyncResult()

        search_value = mapped.identity.get(search_by) or mapped.contact_fields.get(search_by)
        contact = None
        lead_id = None
        if search_value:
            contact = await self._find_contact(account, str(search_value))
            if contact:
                linked = _embedded(contact, "leads")
                if linked:
                    lead_id = linked[0].get("id")
        else:
            logger.info(
                "No %s value to search AmoCRM contacts by", search_by,
                extra={"tenant_id": tenant_id, "provider": self.provider},
            )

        if contact is None:
            if not action.create_if_not_found:
                result.skipped_reason = f"No AmoCRM contact matches {search_by}"
                return result
            contact = await self._create_contact(account, tenant_id, mapped)
            result.contact_created = True
        result.contact = {"id": contact.get("id"), "name": contact.get("name")}

        lead_payload = self._lead_payload(mapped, action)
        if lead_id:
            if lead_payload:
                await self._request(account, "PATCH", f"/api/v4/leads/{lead_id}", json=lead_payload)
            result.lead = {"id": lead_id, **{k: v for k, v in lead_payload.items() if k != "custom_fields_values"}}
        else:
            lead_payload.setdefault("name", DEFAULT_LEAD_NAME)
            lead_payload["_embedded"] = {"contacts": [{"id": contact.get("id")}]}
            created = await self._request(account, "POST", "/api/v4/leads", json=[lead_payload])
            leads = _embedded(created, "leads")
            if not leads:
                raise AmoCRMError("AmoCRM lead creation returned no lead")
            lead_id = leads[0].get("id")
            result.lead = {"id": lead_id, "name": lead_payload["name"]}
            result.lead_created = True

        for text in mapped.notes:
            try:
                await self._request(
                    account, "POST", f"/api/v4/leads/{lead_id}/notes",
                    json=[{"note_type": "common", "params": {"text": text}}],
                )
                result.notes_created += 1
            except AmoCRMError as e:
                result.errors.append(f"note: {e}")
                logger.warning("AmoCRM note on lead %s failed: %s", lead_id, str(e))

        for text in mapped.tasks:
            try:
                await self._request(
                    account, "POST", "/api/v4/tasks",
                    json=[{
                        "text": text,
                        "complete_till": int(time.time()) + TASK_DUE_SECONDS,
                        "entity_id": _as_int(lead_id),
                        "entity_type": "leads",
                        "task_type_id": DEFAULT_TASK_TYPE_ID,
                    }],
                )
                result.tasks_created += 1
            except AmoCRMError as e:
                result.errors.append(f"task: {e}")
                logger.warning("AmoCRM task on lead %s failed: %s", lead_id, str(e))

        logger.info(
            "AmoCRM sync done: contact=%s (created=%s) lead=%s (created=%s)",
            result.contact.get("id"), result.contact_created, lead_id, result.lead_created,
            extra={"tenant_id": tenant_id, "provider": self.provider},
        )
        return result

    async def _create_contact(self, account: _Account, tenant_id: str, mapped: MappingResult) -> dict:
        fields = mapped.contact_fields
        identity = mapped.identity

        payload: dict[str, Any] = {}
        for key in ("first_name", "last_name"):
            value = fields.get(key) or identity.get(key)
            if value:
                payload[key] = value
        name = fields.get("name") or identity.get("name")
        if not name:
            name = " ".join(p for p in (payload.get("first_name"), payload.get("last_name")) if p)
        payload["name"] = name or DEFAULT_CONTACT_NAME

        custom = list(fields.get("custom_fields_values") or [])
        present = {str(entry.get("field_id")) for entry in custom}
        for channel in ("phone", "email"):
            value = identity.get(channel)
            if not value:
                continue
            field_id = await self._channel_field_id(tenant_id, channel)
            if field_id is not None and str(field_id) not in present:
                custom.append({
                    "field_id": field_id,
                    "values": [{"value": value, "enum_code": "WORK"}],
                })
                present.add(str(field_id))
        if custom:
            payload["custom_fields_values"] = custom

        created = await self._request(account, "POST", "/api/v4/contacts", json=[payload])
        contacts = _embedded(created, "contacts")
        if not contacts:
            raise AmoCRMError("AmoCRM contact creation returned no contact")
        contact = dict(contacts[0])
        contact.setdefault("name", payload["name"])
        return contact

    @staticmethod
    def _lead_payload(mapped: MappingResult, action: SyncAction) -> dict:
        payload: dict[str, Any] = {}
        for key in ("name", "price"):
            if key in mapped.lead_fields:
                payload[key] = mapped.lead_fields[key]
        if mapped.lead_fields.get("custom_fields_values"):
            payload["custom_fields_values"] = list(mapped.lead_fields["custom_fields_values"])
        if action.amocrm_pipeline_id:
            payload["pipeline_id"] = _as_int(action.amocrm_pipeline_id)
        if action.amocrm_status_id:
            payload["status_id"] = _as_int(action.amocrm_status_id)
        return payload

    async def _channel_field_id(self, tenant_id: str, channel: str) -> Optional[int]:
        metadata = await self._cache.get_metadata(
            tenant_id, self.provider, "contacts_fields",
            lambda: self._storage.get_metadata(tenant_id, self.provider, "contacts_fields"),
        )
        for field in metadata_fields(metadata):
            if field.get("code") == channel.upper():
                return field.get("id")
        return None

    # -- admin --

    async def test_connection(self, tenant_id: str) -> bool:
        try:
            account = await self._account(tenant_id)
            data = await self._request(account, "GET", "/api/v4/leads/pipelines")
            return bool(data.get("_embedded") or data.get("_links"))
        except AmoCRMError as e:
            logger.warning(
                "AmoCRM connection test failed: %s", str(e),
                extra={"tenant_id": tenant_id, "provider": self.provider},
            )
            return False

    async def refresh_metadata(self, tenant_id: str) -> dict:
        account = await self._account(tenant_id)
        counts: dict[str, int] = {}
        for metadata_type, path in METADATA_ENDPOINTS:
            try:
                data = await self._request(account, "GET", path)
            except AmoCRMError as e:
                if self._system_log is not None:
                    await self._system_log.error(
                        f"AmoCRM {metadata_type} refresh failed: {e}",
                        tenant_id=tenant_id,
                        data={"status_code": e.status_code},
                        source="metadata",
                    )
                continue
            await self._storage.save_metadata(tenant_id, self.provider, metadata_type, data)
            await self._cache.set_metadata(tenant_id, self.provider, metadata_type, data)
            counts[metadata_type] = len(metadata_fields(data)) or len(_embedded(data, "pipelines"))
        if self._system_log is not None:
            await self._system_log.info(
                "AmoCRM metadata refreshed", tenant_id=tenant_id, data=counts, source="metadata",
            )
        return counts
