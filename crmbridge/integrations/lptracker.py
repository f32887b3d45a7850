"""
LPTracker connector.

Auth: one global login/password (superuser-managed) exchanged at
POST https://{address}/login for a token sent in the `token` header. The
token is shared by all tenants: cached in Redis through CrmCache, persisted
to the global settings row, refreshed lazily. A 401 drops the token and
retries the call once with a fresh login.
Every response is {"status": "success"|"error", "result": ..., "errors": [...]}.
Tenants are scoped by project id.
"""
import logging
from typing import Any, Optional

import httpx

from crmbridge.integrations.crm_base import (
    CRMConnector,
    DEFAULT_CONTACT_NAME,
    DEFAULT_LEAD_NAME,
    LPTrackerError,
    SyncResult,
    is_retryable_status,
)
from crmbridge.schemas.sync_rule import SyncAction
from crmbridge.schemas.webhook_payloads import MappingResult, PROVIDER_LPTRACKER
from crmbridge.utils.encryption import decrypt_credential

logger = logging.getLogger(__name__)

TIMEOUT = 10.0
DEFAULT_ADDRESS = "direct.lptracker.ru"
DEFAULT_SERVICE = "CRM Integration"
API_VERSION = "1.0"


class _AuthExpired(Exception):
    pass


def _error_message(data: dict) -> str:
    errors = data.get("errors") or []
    parts = []
    for err in errors:
        if isinstance(err, dict):
            parts.append(str(err.get("message") or err.get("code") or err))
        else:
            parts.append(str(err))
    return "; ".join(parts) or "unknown error"


def _is_auth_error(data: dict) -> bool:
    for err in data.get("errors") or []:
        if isinstance(err, dict) and str(err.get("code")) == "401":
            return True
    return False


class LPTrackerConnector(CRMConnector):
    """LPTracker API connector."""

    provider = PROVIDER_LPTRACKER

    def __init__(
        self,
        storage,
        cache,
        system_log=None,
        timeout: float = TIMEOUT,
        default_address: str = DEFAULT_ADDRESS,
        service: str = DEFAULT_SERVICE,
    ):
        self._storage = storage
        self._cache = cache
        self._system_log = system_log
        self.timeout = timeout
        self.default_address = default_address
        self.service = service

    # -- auth --

    async def _global_settings(self) -> dict:
        settings = await self._storage.get_lptracker_global_settings()
        if not settings:
            raise LPTrackerError("LPTracker global settings are not configured")
        return settings

    def _base_url(self, settings: dict) -> str:
        address = (settings.get("address") or self.default_address).strip().rstrip("/")
        for prefix in ("https://", "http://"):
            if address.startswith(prefix):
                address = address[len(prefix):]
        return f"https://{address}"

    async def _get_token(self, settings: dict, force_refresh: bool = False) -> str:
        """Cached token, else the persisted one, else a fresh login."""
        if not force_refresh:
            token = await self._cache.get_lptracker_token()
            if token:
                return token
            token = settings.get("token")
            if token:
                await self._cache.set_lptracker_token(token)
                return token
        return await self._login(settings)

    async def _login(self, settings: dict) -> str:
        password = decrypt_credential(settings.get("password"), "LPTracker password")
        payload = {
            "login": settings.get("login"),
            "password": password,
            "service": settings.get("service") or self.service,
            "version": API_VERSION,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self._base_url(settings)}/login", json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            await self._auth_failed(f"login returned {status}")
            raise LPTrackerError(
                f"LPTracker login returned {status}",
                status_code=status,
                retryable=is_retryable_status(status),
            ) from e
        except httpx.TransportError as e:
            raise LPTrackerError(f"LPTracker login failed: {e}", retryable=True) from e

        data = response.json() or {}
        token = (data.get("result") or {}).get("token") if isinstance(data.get("result"), dict) else None
        if data.get("status") != "success" or not token:
            message = _error_message(data)
            await self._auth_failed(message)
            raise LPTrackerError(f"LPTracker login rejected: {message}")

        await self._cache.set_lptracker_token(token)
        try:
            await self._storage.update_lptracker_token(token)
        except Exception as e:
            logger.warning("Failed to persist LPTracker token: %s", str(e))
        logger.info("LPTracker token refreshed")
        return token

    async def _auth_failed(self, reason: str) -> None:
        from crmbridge.utils.alerting import send_alert, AlertType
        await send_alert(
            AlertType.LPTRACKER_AUTH_FAILED,
            f"LPTracker authentication failed: {reason}",
        )

    async def invalidate_token(self) -> None:
        await self._cache.invalidate_lptracker_token()
        try:
            await self._storage.update_lptracker_token(None)
        except Exception as e:
            logger.warning("Failed to clear persisted LPTracker token: %s", str(e))

    # -- transport --

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Authenticated request; returns the `result` member of the response."""
        settings = await self._global_settings()
        token = await self._get_token(settings)
        try:
            return await self._send(settings, token, method, path, json, params)
        except _AuthExpired:
            logger.info("LPTracker token rejected, logging in again")
            await self.invalidate_token()
            token = await self._get_token(settings, force_refresh=True)
            try:
                return await self._send(settings, token, method, path, json, params)
            except _AuthExpired as e:
                raise LPTrackerError(
                    f"LPTracker {method} {path} unauthorized after re-login", status_code=401,
                ) from e

    async def _send(
        self,
        settings: dict,
        token: str,
        method: str,
        path: str,
        json: Optional[Any],
        params: Optional[dict],
    ) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self._base_url(settings)}{path}",
                    headers={"token": token, "Content-Type": "application/json"},
                    json=json,
                    params=params,
                )
                if response.status_code == 401:
                    raise _AuthExpired()
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise LPTrackerError(
                f"LPTracker {method} {path} returned {status}",
                status_code=status,
                retryable=is_retryable_status(status),
            ) from e
        except httpx.TransportError as e:
            raise LPTrackerError(f"LPTracker {method} {path} failed: {e}", retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return data
        if data.get("status") not in (None, "success"):
            if _is_auth_error(data):
                raise _AuthExpired()
            raise LPTrackerError(f"LPTracker {method} {path}: {_error_message(data)}")
        return data.get("result", data)

    # -- reads --

    async def get_lead(self, tenant_id: str, lead_id: str) -> dict:
        result = await self._request("GET", f"/lead/{lead_id}")
        return result if isinstance(result, dict) else {}

    async def _project_id(self, tenant_id: str, action: Optional[SyncAction] = None) -> str:
        if action is not None and action.lptracker_project_id:
            return action.lptracker_project_id
        settings = await self._storage.get_lptracker_settings(tenant_id)
        if not settings or not settings.get("project_id"):
            raise LPTrackerError(f"LPTracker project is not configured for tenant {tenant_id}")
        return str(settings["project_id"])

    async def _find_contact(self, project_id: str, search_by: str, value: str) -> Optional[dict]:
        result = await self._request(
            "GET", "/contact/search", params={"project_id": project_id, search_by: value},
        )
        if isinstance(result, list):
            return result[0] if result else None
        if isinstance(result, dict) and result.get("id"):
            return result
        return None

    # -- sync --

    async def sync(
        self,
        tenant_id: str,
        mapped: MappingResult,
        search_by: str,
        action: SyncAction,
    ) -> SyncResult:
        project_id = await self._project_id(tenant_id, action)
        result = SyncResult()

        search_value = mapped.contact_fields.get(search_by) or mapped.identity.get(search_by)
        contact = None
        lead_id = None
        if search_value:
            contact = await self._find_contact(project_id, search_by, str(search_value))
            if contact:
                linked = contact.get("leads") or contact.get("lead_ids") or []
                if linked:
                    first = linked[0]
                    lead_id = first.get("id") if isinstance(first, dict) else first

        if contact is None:
            if not action.create_if_not_found:
                result.skipped_reason = f"No LPTracker contact matches {search_by}"
                return result
            contact = await self._create_contact(project_id, mapped)
            result.contact_created = True
        result.contact = {"id": contact.get("id"), "name": contact.get("name")}

        stage_id = action.lptracker_stage_id
        custom = mapped.lead_fields.get("custom") or {}
        if lead_id:
            update: dict[str, Any] = {}
            for key in ("name", "price"):
                if key in mapped.lead_fields:
                    update[key] = mapped.lead_fields[key]
            if custom:
                update["custom"] = custom
            if update:
                await self._request("PUT", f"/lead/{lead_id}", json=update)
            if stage_id:
                await self._request("PUT", f"/lead/{lead_id}/funnel", json={"funnel": stage_id})
            result.lead = {"id": lead_id, **{k: v for k, v in update.items() if k != "custom"}}
        else:
            payload: dict[str, Any] = {
                "contact_id": contact.get("id"),
                "name": mapped.lead_fields.get("name") or DEFAULT_LEAD_NAME,
            }
            if "price" in mapped.lead_fields:
                payload["price"] = mapped.lead_fields["price"]
            if stage_id:
                payload["funnel"] = stage_id
            if custom:
                payload["custom"] = custom
            created = await self._request("POST", "/lead", json=payload)
            if not isinstance(created, dict) or not created.get("id"):
                raise LPTrackerError("LPTracker lead creation returned no lead")
            lead_id = created["id"]
            result.lead = {"id": lead_id, "name": payload["name"]}
            result.lead_created = True

        # LPTracker has no task entity; tasks become lead comments
        comments = [(text, "note") for text in mapped.notes] + [(f"Task: {text}", "task") for text in mapped.tasks]
        for text, kind in comments:
            try:
                await self._request("POST", f"/lead/{lead_id}/comment", json={"text": text})
                if kind == "note":
                    result.notes_created += 1
                else:
                    result.tasks_created += 1
            except LPTrackerError as e:
                result.errors.append(f"{kind}: {e}")
                logger.warning("LPTracker %s on lead %s failed: %s", kind, lead_id, str(e))

        logger.info(
            "LPTracker sync done: contact=%s (created=%s) lead=%s (created=%s)",
            result.contact.get("id"), result.contact_created, lead_id, result.lead_created,
            extra={"tenant_id": tenant_id, "provider": self.provider},
        )
        return result

    async def _create_contact(self, project_id: str, mapped: MappingResult) -> dict:
        fields = mapped.contact_fields
        identity = mapped.identity

        name = fields.get("name") or identity.get("name")
        if not name:
            parts = [fields.get("first_name") or identity.get("first_name"),
                     fields.get("last_name") or identity.get("last_name")]
            name = " ".join(p for p in parts if p)

        details = []
        for channel in ("phone", "email"):
            value = fields.get(channel) or identity.get(channel)
            if value:
                details.append({"type": channel, "data": value})

        payload: dict[str, Any] = {
            "project_id": project_id,
            "name": name or DEFAULT_CONTACT_NAME,
            "details": details,
        }
        if fields.get("custom"):
            payload["fields"] = fields["custom"]

        created = await self._request("POST", "/contact", json=payload)
        if not isinstance(created, dict) or not created.get("id"):
            raise LPTrackerError("LPTracker contact creation returned no contact")
        created.setdefault("name", payload["name"])
        return created

    # -- admin --

    async def test_connection(self, tenant_id: str) -> bool:
        try:
            projects = await self._request("GET", "/projects")
            return isinstance(projects, list)
        except LPTrackerError as e:
            logger.warning("LPTracker connection test failed: %s", str(e))
            return False

    async def refresh_metadata(self, tenant_id: str) -> dict:
        counts: dict[str, int] = {}
        endpoints = [("projects", "/projects")]
        try:
            project_id = await self._project_id(tenant_id)
            endpoints += [
                ("custom_fields", f"/project/{project_id}/custom"),
                ("funnel", f"/project/{project_id}/funnel"),
            ]
        except LPTrackerError as e:
            logger.info("Skipping LPTracker project metadata: %s", str(e))

        for metadata_type, path in endpoints:
            try:
                data = await self._request("GET", path)
            except LPTrackerError as e:
                if self._system_log is not None:
                    await self._system_log.error(
                        f"LPTracker {metadata_type} refresh failed: {e}",
                        tenant_id=tenant_id,
                        source="metadata",
                    )
                continue
            # Stored in the same {"result": [...]} shape the API returns
            wrapped = {"result": data}
            await self._storage.save_metadata(tenant_id, self.provider, metadata_type, wrapped)
            await self._cache.set_metadata(tenant_id, self.provider, metadata_type, wrapped)
            counts[metadata_type] = len(data) if isinstance(data, list) else 0
        if self._system_log is not None:
            await self._system_log.info(
                "LPTracker metadata refreshed", tenant_id=tenant_id, data=counts, source="metadata",
            )
        return counts
