"""
Storage collaborator for the rule engine.

The engine never touches SQLAlchemy directly: it talks to a Storage object.
Rows come back as plain dicts so they can be cached in Redis as JSON and so
tests can swap in an in-memory implementation.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


def normalize_amocrm_subdomain(value: Optional[str], domain: str = "amocrm.ru") -> str:
    """
    Reduce any form of an AmoCRM account address to the bare subdomain.

    "https://MyCo.amocrm.ru/" -> "myco", "myco.amocrm.ru" -> "myco", "myco" -> "myco"
    """
    if not value:
        return ""
    host = str(value).strip().lower()
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix):]
    host = host.split("/", 1)[0]
    suffix = f".{domain}"
    if host.endswith(suffix):
        host = host[: -len(suffix)]
    return host


class Storage(ABC):
    """Everything the engine reads and writes outside the CRMs."""

    @abstractmethod
    async def get_sync_rules(self, tenant_id: str, webhook_source: Optional[str] = None) -> list[dict]:
        """Rules for a tenant in stored order (inactive ones included)."""

    @abstractmethod
    async def get_amocrm_settings(self, tenant_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def get_lptracker_settings(self, tenant_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def get_lptracker_global_settings(self) -> Optional[dict]:
        ...

    @abstractmethod
    async def update_lptracker_token(self, token: Optional[str]) -> None:
        ...

    @abstractmethod
    async def find_tenant_by_amocrm_subdomain(self, subdomain: str) -> Optional[str]:
        ...

    @abstractmethod
    async def find_tenant_by_lptracker_project(self, project_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_metadata(self, tenant_id: str, provider: str, type: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def save_metadata(self, tenant_id: str, provider: str, type: str, data: Any) -> None:
        ...

    @abstractmethod
    async def check_webhook_processed(
        self,
        tenant_id: str,
        provider: str,
        entity_id: str,
        rule_id: int,
        event_timestamp: Optional[str] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_webhook_processed(
        self,
        tenant_id: str,
        provider: str,
        entity_id: str,
        rule_id: int,
        event_timestamp: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def increment_rule_execution(self, rule_id: int) -> None:
        ...

    @abstractmethod
    async def create_system_log(self, entry: dict) -> None:
        """entry keys: tenant_id, level, message, data, source, correlation_id."""


def _rule_to_dict(rule) -> dict:
    return {
        "id": rule.id,
        "tenant_id": rule.tenant_id,
        "name": rule.name,
        "webhook_source": rule.webhook_source,
        "conditions": rule.conditions or {},
        "actions": rule.actions or {},
        "is_active": bool(rule.is_active),
        "execution_count": rule.execution_count or 0,
    }


class DatabaseStorage(Storage):
    """SQLAlchemy implementation. One short-lived session per call."""

    def __init__(self, session_factory: Optional[Callable] = None):
        if session_factory is None:
            from crmbridge.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get_sync_rules(self, tenant_id: str, webhook_source: Optional[str] = None) -> list[dict]:
        from crmbridge.models.sync_rule import SyncRule

        async with self._session_factory() as db:
            query = select(SyncRule).where(SyncRule.tenant_id == tenant_id)
            if webhook_source:
                query = query.where(SyncRule.webhook_source == webhook_source)
            result = await db.execute(query.order_by(SyncRule.id))
            return [_rule_to_dict(r) for r in result.scalars().all()]

    async def get_amocrm_settings(self, tenant_id: str) -> Optional[dict]:
        from crmbridge.models.crm_settings import AmoCrmSettings

        async with self._session_factory() as db:
            result = await db.execute(
                select(AmoCrmSettings).where(AmoCrmSettings.tenant_id == tenant_id).limit(1)
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            return {
                "tenant_id": row.tenant_id,
                "subdomain": row.subdomain,
                "api_key": row.api_key_encrypted,
                "is_active": bool(row.is_active),
            }

    async def get_lptracker_settings(self, tenant_id: str) -> Optional[dict]:
        from crmbridge.models.crm_settings import LpTrackerSettings

        async with self._session_factory() as db:
            result = await db.execute(
                select(LpTrackerSettings).where(LpTrackerSettings.tenant_id == tenant_id).limit(1)
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            return {
                "tenant_id": row.tenant_id,
                "project_id": row.project_id,
                "webhook_active": bool(row.webhook_active),
                "is_active": bool(row.is_active),
            }

    async def get_lptracker_global_settings(self) -> Optional[dict]:
        from crmbridge.models.crm_settings import LpTrackerGlobalSettings

        async with self._session_factory() as db:
            result = await db.execute(
                select(LpTrackerGlobalSettings)
                .where(LpTrackerGlobalSettings.is_active == True)  # noqa: E712
                .order_by(LpTrackerGlobalSettings.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            return {
                "login": row.login,
                "password": row.password_encrypted,
                "service": row.service,
                "address": row.address,
                "token": row.token,
                "token_updated_at": row.token_updated_at.isoformat() if row.token_updated_at else None,
            }

    async def update_lptracker_token(self, token: Optional[str]) -> None:
        from crmbridge.models.crm_settings import LpTrackerGlobalSettings

        async with self._session_factory() as db:
            await db.execute(
                update(LpTrackerGlobalSettings)
                .where(LpTrackerGlobalSettings.is_active == True)  # noqa: E712
                .values(token=token, token_updated_at=datetime.now(timezone.utc))
            )
            await db.commit()

    async def find_tenant_by_amocrm_subdomain(self, subdomain: str) -> Optional[str]:
        from crmbridge.config import get_settings
        from crmbridge.models.crm_settings import AmoCrmSettings

        domain = get_settings().amocrm_domain
        bare = normalize_amocrm_subdomain(subdomain, domain)
        if not bare:
            return None

        async with self._session_factory() as db:
            result = await db.execute(
                select(AmoCrmSettings)
                .where(func.lower(AmoCrmSettings.subdomain).in_([bare, f"{bare}.{domain}"]))
                .where(AmoCrmSettings.is_active == True)  # noqa: E712
                .order_by(AmoCrmSettings.id)
            )
            row = result.scalars().first()
            if row:
                return row.tenant_id

            # Stored values with a scheme or trailing slash
            result = await db.execute(
                select(AmoCrmSettings).where(AmoCrmSettings.is_active == True)  # noqa: E712
            )
            for candidate in result.scalars().all():
                if normalize_amocrm_subdomain(candidate.subdomain, domain) == bare:
                    return candidate.tenant_id
            return None

    async def find_tenant_by_lptracker_project(self, project_id: str) -> Optional[str]:
        from crmbridge.models.crm_settings import LpTrackerSettings

        if not project_id:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                select(LpTrackerSettings)
                .where(LpTrackerSettings.project_id == str(project_id))
                .where(LpTrackerSettings.is_active == True)  # noqa: E712
                .order_by(LpTrackerSettings.id)
            )
            row = result.scalars().first()
            return row.tenant_id if row else None

    async def get_metadata(self, tenant_id: str, provider: str, type: str) -> Optional[Any]:
        from crmbridge.models.crm_metadata import CrmMetadata

        async with self._session_factory() as db:
            result = await db.execute(
                select(CrmMetadata)
                .where(CrmMetadata.tenant_id == tenant_id)
                .where(CrmMetadata.provider == provider)
                .where(CrmMetadata.type == type)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return row.data if row else None

    async def save_metadata(self, tenant_id: str, provider: str, type: str, data: Any) -> None:
        from crmbridge.models.crm_metadata import CrmMetadata

        async with self._session_factory() as db:
            result = await db.execute(
                select(CrmMetadata)
                .where(CrmMetadata.tenant_id == tenant_id)
                .where(CrmMetadata.provider == provider)
                .where(CrmMetadata.type == type)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row:
                row.data = data
                row.updated_at = datetime.now(timezone.utc)
            else:
                db.add(CrmMetadata(tenant_id=tenant_id, provider=provider, type=type, data=data))
            await db.commit()

    async def check_webhook_processed(
        self,
        tenant_id: str,
        provider: str,
        entity_id: str,
        rule_id: int,
        event_timestamp: Optional[str] = None,
    ) -> bool:
        from crmbridge.models.processed_webhook import ProcessedWebhook

        async with self._session_factory() as db:
            result = await db.execute(
                select(ProcessedWebhook.id)
                .where(ProcessedWebhook.tenant_id == tenant_id)
                .where(ProcessedWebhook.provider == provider)
                .where(ProcessedWebhook.entity_id == str(entity_id))
                .where(ProcessedWebhook.rule_id == rule_id)
                .where(ProcessedWebhook.event_timestamp == (event_timestamp or ""))
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def mark_webhook_processed(
        self,
        tenant_id: str,
        provider: str,
        entity_id: str,
        rule_id: int,
        event_timestamp: Optional[str] = None,
    ) -> None:
        from crmbridge.models.processed_webhook import ProcessedWebhook

        async with self._session_factory() as db:
            db.add(ProcessedWebhook(
                tenant_id=tenant_id,
                provider=provider,
                entity_id=str(entity_id),
                rule_id=rule_id,
                event_timestamp=event_timestamp or "",
            ))
            try:
                await db.commit()
            except IntegrityError:
                # Marker already present
                await db.rollback()
                logger.debug(
                    "Webhook already marked: %s/%s rule=%s", provider, entity_id, rule_id,
                )

    async def increment_rule_execution(self, rule_id: int) -> None:
        from crmbridge.models.sync_rule import SyncRule

        async with self._session_factory() as db:
            await db.execute(
                update(SyncRule)
                .where(SyncRule.id == rule_id)
                .values(execution_count=SyncRule.execution_count + 1)
            )
            await db.commit()

    async def create_system_log(self, entry: dict) -> None:
        from crmbridge.models.system_log import SystemLog

        async with self._session_factory() as db:
            db.add(SystemLog(
                tenant_id=entry.get("tenant_id"),
                level=entry.get("level", "info"),
                message=entry.get("message", ""),
                data=entry.get("data"),
                source=entry.get("source", "system"),
                correlation_id=entry.get("correlation_id"),
            ))
            await db.commit()
