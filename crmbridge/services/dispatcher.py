"""
Webhook dispatcher - runs a tenant's sync rules for one inbound CRM event.

Flow per delivery:
1. Normalize the provider envelope (api.webhook_sources)
2. Resolve the tenant (AmoCRM subdomain / LPTracker project id)
3. Enrich: fetch the full lead and its contacts from the provider
4. Under a per-entity lock, for each active rule in stored order:
   evaluate -> check idempotency marker -> run actions -> write marker,
   bump execution_count (marker and counter only when every action succeeded)

handle_* entry points never raise. process_* raise WebhookRetryableError
for transient failures (network, timeouts, 5xx/429, lock contention) so
the webhook queue can back off and retry; rules that already ran are
skipped on the retry by their markers.
"""
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from crmbridge.api.webhook_sources import NORMALIZERS
from crmbridge.integrations.crm_base import CRMConnector, CRMError
from crmbridge.schemas.sync_rule import SyncAction
from crmbridge.schemas.webhook_payloads import (
    EventContext,
    NormalizedWebhook,
    PROVIDER_AMOCRM,
    PROVIDER_LPTRACKER,
)
from crmbridge.services.rule_evaluator import matches
from crmbridge.utils.alerting import AlertType, send_alert
from crmbridge.utils.locks import LockTimeoutError, entity_lock

logger = logging.getLogger(__name__)

ACTION_TARGETS = {
    "sync_to_amocrm": PROVIDER_AMOCRM,
    "sync_to_lptracker": PROVIDER_LPTRACKER,
}

# Outcomes of one action / rule
OK = "ok"
FAILED = "failed"
RETRY = "retry"


class WebhookRetryableError(Exception):
    """Processing hit a transient failure; the delivery should be retried."""
    pass


class WebhookDispatcher:
    def __init__(
        self,
        storage,
        cache,
        connectors: dict[str, CRMConnector],
        field_mapper,
        system_log,
        lock_ttl: int = 60,
        lock_wait: float = 10.0,
    ):
        self._storage = storage
        self._cache = cache
        self._connectors = connectors
        self._field_mapper = field_mapper
        self._system_log = system_log
        self.lock_ttl = lock_ttl
        self.lock_wait = lock_wait

    @classmethod
    def from_settings(cls, storage=None, cache=None, settings=None) -> "WebhookDispatcher":
        """Wire the production object graph."""
        from crmbridge.integrations.amocrm import AmoCRMConnector
        from crmbridge.integrations.lptracker import LPTrackerConnector
        from crmbridge.services.crm_cache import CrmCache
        from crmbridge.services.field_mapper import FieldMapper
        from crmbridge.services.storage import DatabaseStorage
        from crmbridge.services.system_log import SystemLogService

        if settings is None:
            from crmbridge.config import get_settings
            settings = get_settings()
        storage = storage or DatabaseStorage()
        cache = cache or CrmCache.from_settings(settings)
        system_log = SystemLogService(storage)
        connectors = {
            PROVIDER_AMOCRM: AmoCRMConnector(
                storage, cache, system_log,
                timeout=settings.crm_http_timeout,
                domain=settings.amocrm_domain,
            ),
            PROVIDER_LPTRACKER: LPTrackerConnector(
                storage, cache, system_log,
                timeout=settings.crm_http_timeout,
                default_address=settings.lptracker_address,
                service=settings.lptracker_service,
            ),
        }
        return cls(
            storage=storage,
            cache=cache,
            connectors=connectors,
            field_mapper=FieldMapper(
                storage, cache, system_log, phone_region=settings.phone_default_region,
            ),
            system_log=system_log,
            lock_ttl=settings.entity_lock_ttl_seconds,
            lock_wait=settings.entity_lock_wait_seconds,
        )

    @property
    def connectors(self) -> dict[str, CRMConnector]:
        return self._connectors

    # -- entry points --

    async def handle_amocrm_webhook(self, raw_payload: dict) -> None:
        await self._handle(PROVIDER_AMOCRM, raw_payload)

    async def handle_lptracker_webhook(self, raw_payload: dict) -> None:
        await self._handle(PROVIDER_LPTRACKER, raw_payload)

    async def process_amocrm_webhook(self, raw_payload: dict) -> int:
        return await self.process(PROVIDER_AMOCRM, raw_payload)

    async def process_lptracker_webhook(self, raw_payload: dict) -> int:
        return await self.process(PROVIDER_LPTRACKER, raw_payload)

    async def _handle(self, provider: str, raw_payload: dict) -> None:
        try:
            await self.process(provider, raw_payload)
        except WebhookRetryableError as e:
            logger.warning("%s webhook left unfinished after transient failure: %s", provider, str(e))
        except Exception as e:
            logger.error("%s webhook processing failed: %s", provider, str(e), exc_info=True)

    async def process(self, provider: str, raw_payload: dict) -> int:
        """Process one delivery. Returns the number of rules executed."""
        normalizer = NORMALIZERS.get(provider)
        if normalizer is None:
            raise ValueError(f"Unknown webhook provider: {provider}")
        event = normalizer(raw_payload or {})

        tenant_id = await self._resolve_tenant(event)
        if not tenant_id:
            await self._system_log.warning(
                f"{provider} webhook does not match any tenant (hint={event.tenant_hint!r})",
                data={"tenant_hint": event.tenant_hint, "entity_id": event.entity_id},
                source="webhook",
            )
            await send_alert(
                AlertType.TENANT_UNRESOLVED,
                f"{provider} webhook from unknown account {event.tenant_hint!r}",
                severity="warning",
                extra={"provider": provider, "tenant_hint": event.tenant_hint},
                dedup_suffix=f"{provider}:{event.tenant_hint}",
            )
            return 0

        if not event.entity_id:
            await self._system_log.warning(
                f"{provider} webhook carries no lead id",
                tenant_id=tenant_id,
                data={"action": event.action},
                source="webhook",
            )
            return 0

        if event.action == "delete":
            await self._system_log.info(
                f"{provider} lead {event.entity_id} deleted, no rules evaluated",
                tenant_id=tenant_id,
                source="webhook",
            )
            return 0

        context = await self._enrich(tenant_id, event)
        if context is None:
            return 0

        return await self._run_rules(context)

    # -- steps --

    async def _resolve_tenant(self, event: NormalizedWebhook) -> Optional[str]:
        if not event.tenant_hint:
            return None
        if event.provider == PROVIDER_AMOCRM:
            return await self._storage.find_tenant_by_amocrm_subdomain(event.tenant_hint)
        return await self._storage.find_tenant_by_lptracker_project(event.tenant_hint)

    async def _enrich(self, tenant_id: str, event: NormalizedWebhook) -> Optional[EventContext]:
        """Fetch full lead detail. Returns None when the webhook must be abandoned."""
        context = EventContext(
            provider=event.provider,
            tenant_id=tenant_id,
            entity_id=event.entity_id,
            event_timestamp=event.event_timestamp,
            action=event.action,
            raw_payload=event.raw,
            webhook_fields=event.fields,
        )
        connector = self._connectors[event.provider]
        try:
            if event.provider == PROVIDER_AMOCRM:
                lead, contacts = await connector.get_lead_with_contacts(tenant_id, event.entity_id)
                context.lead = lead
                context.contacts = contacts
            else:
                lead = await connector.get_lead(tenant_id, event.entity_id)
                context.lead = lead
                contact = lead.get("contact") or event.fields.get("contact")
                if isinstance(contact, dict):
                    context.contacts = [contact]
                context.custom_fields = _flat_custom_fields(lead.get("custom"))
        except CRMError as e:
            await self._system_log.error(
                f"Failed to fetch {event.provider} lead {event.entity_id}: {e}",
                tenant_id=tenant_id,
                data={"entity_id": event.entity_id, "status_code": e.status_code},
                source="webhook",
            )
            if e.retryable:
                raise WebhookRetryableError(str(e)) from e
            return None
        except httpx.TransportError as e:
            await self._system_log.error(
                f"Failed to fetch {event.provider} lead {event.entity_id}: {e}",
                tenant_id=tenant_id,
                source="webhook",
            )
            raise WebhookRetryableError(str(e)) from e
        return context

    async def _load_rules(self, tenant_id: str, provider: str) -> list[dict]:
        rules = await self._cache.get_rules(
            tenant_id, provider,
            lambda: self._storage.get_sync_rules(tenant_id, provider),
        )
        return [
            r for r in rules
            if r.get("is_active") and r.get("webhook_source") == provider
        ]

    async def _run_rules(self, context: EventContext) -> int:
        rules = await self._load_rules(context.tenant_id, context.provider)
        if not rules:
            logger.info(
                "No active %s rules", context.provider,
                extra={"tenant_id": context.tenant_id, "provider": context.provider},
            )
            return 0

        executed = 0
        retry_needed = False
        try:
            async with entity_lock(
                context.tenant_id, context.provider, context.entity_id,
                ttl=self.lock_ttl, wait=self.lock_wait,
            ):
                for rule in rules:
                    try:
                        outcome = await self._run_rule(rule, context)
                    except Exception as e:
                        logger.error(
                            "Rule %s crashed: %s", rule.get("id"), str(e), exc_info=True,
                            extra={"tenant_id": context.tenant_id, "rule_id": rule.get("id")},
                        )
                        await self._system_log.error(
                            f"Rule \"{rule.get('name')}\" failed for lead {context.entity_id}: {e}",
                            tenant_id=context.tenant_id,
                            data={"rule_id": rule.get("id")},
                            source="webhook",
                        )
                        continue
                    if outcome == OK:
                        executed += 1
                    elif outcome == RETRY:
                        retry_needed = True
        except LockTimeoutError as e:
            raise WebhookRetryableError(str(e)) from e

        if retry_needed:
            raise WebhookRetryableError(
                f"{context.provider} lead {context.entity_id}: transient action failure"
            )
        return executed

    async def _run_rule(self, rule: dict, context: EventContext) -> Optional[str]:
        """Returns OK, FAILED, RETRY, or None when the rule did not apply."""
        tenant_id = context.tenant_id
        rule_id = rule.get("id")

        if not matches(rule.get("conditions"), context):
            return None

        try:
            processed = await self._storage.check_webhook_processed(
                tenant_id, context.provider, context.entity_id, rule_id, context.event_timestamp,
            )
        except Exception as e:
            logger.warning(
                "Idempotency check failed for rule %s: %s", rule_id, str(e),
                extra={"tenant_id": tenant_id, "rule_id": rule_id},
            )
            return RETRY
        if processed:
            await self._system_log.info(
                f"Rule \"{rule.get('name')}\" already applied to lead {context.entity_id}, skipping",
                tenant_id=tenant_id,
                data={"rule_id": rule_id, "event_timestamp": context.event_timestamp},
                source="webhook",
            )
            return None

        actions = (rule.get("actions") or {}).get("list") or []
        outcomes = []
        for raw_action in actions:
            outcomes.append(await self._execute_action(rule, raw_action, context))

        if any(o == RETRY for o in outcomes):
            return RETRY
        if any(o == FAILED for o in outcomes):
            return FAILED

        try:
            await self._storage.mark_webhook_processed(
                tenant_id, context.provider, context.entity_id, rule_id, context.event_timestamp,
            )
        except Exception as e:
            logger.warning("Idempotency marker write failed for rule %s: %s", rule_id, str(e))
        try:
            await self._storage.increment_rule_execution(rule_id)
        except Exception as e:
            logger.warning("Execution counter update failed for rule %s: %s", rule_id, str(e))
        await self._system_log.info(
            f"Rule \"{rule.get('name')}\" executed for {context.provider} lead {context.entity_id}",
            tenant_id=tenant_id,
            data={"rule_id": rule_id, "actions": len(actions)},
            source="webhook",
        )
        return OK

    async def _execute_action(self, rule: dict, raw_action: Any, context: EventContext) -> str:
        tenant_id = context.tenant_id
        try:
            action = SyncAction.model_validate(raw_action)
        except ValidationError as e:
            await self._system_log.error(
                f"Rule \"{rule.get('name')}\" has a malformed action",
                tenant_id=tenant_id,
                data={"rule_id": rule.get("id"), "error": str(e)},
                source="webhook",
            )
            return FAILED

        target = ACTION_TARGETS.get(action.type)
        connector = self._connectors.get(target) if target else None
        if connector is None:
            await self._system_log.warning(
                f"Unknown action type {action.type!r}",
                tenant_id=tenant_id,
                data={"rule_id": rule.get("id")},
                source="webhook",
            )
            return FAILED

        try:
            mapped = await self._field_mapper.map(tenant_id, action.field_mappings, context, target)
            result = await connector.sync(tenant_id, mapped, action.search_by, action)
        except CRMError as e:
            await self._system_log.error(
                f"Action {action.type} failed: {e}",
                tenant_id=tenant_id,
                data={
                    "rule_id": rule.get("id"),
                    "action_type": action.type,
                    "error": str(e),
                    "status_code": e.status_code,
                },
                source="sync",
            )
            return RETRY if e.retryable else FAILED
        except httpx.TransportError as e:
            await self._system_log.error(
                f"Action {action.type} failed: {e}",
                tenant_id=tenant_id,
                data={"rule_id": rule.get("id"), "action_type": action.type, "error": str(e)},
                source="sync",
            )
            return RETRY
        except Exception as e:
            logger.error("Action %s crashed: %s", action.type, str(e), exc_info=True)
            await self._system_log.error(
                f"Action {action.type} failed: {e}",
                tenant_id=tenant_id,
                data={
                    "rule_id": rule.get("id"),
                    "action_type": action.type,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                source="sync",
            )
            return FAILED

        if result.skipped_reason:
            await self._system_log.info(
                f"Action {action.type} skipped: {result.skipped_reason}",
                tenant_id=tenant_id,
                data={"rule_id": rule.get("id")},
                source="sync",
            )
        else:
            await self._system_log.info(
                f"Action {action.type} completed",
                tenant_id=tenant_id,
                data={"rule_id": rule.get("id"), "result": result.model_dump()},
                source="sync",
            )
        return OK


def _flat_custom_fields(custom: Any) -> list[dict]:
    """LPTracker lead custom values as [{id, name, value}] whichever shape the API used."""
    if isinstance(custom, list):
        return [c for c in custom if isinstance(c, dict)]
    if isinstance(custom, dict):
        return [{"id": key, "value": value} for key, value in custom.items()]
    return []
