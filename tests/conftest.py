"""
Test configuration and fixtures.
Uses SQLite in-memory for storage tests. Redis and CRM HTTP are faked.
"""
import fnmatch
from typing import Any, Optional
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import crmbridge.models  # noqa: F401  (registers every table on Base.metadata)
from crmbridge.database import Base
from crmbridge.schemas.webhook_payloads import EventContext
from crmbridge.services.crm_cache import CrmCache
from crmbridge.services.storage import Storage, normalize_amocrm_subdomain
from crmbridge.services.system_log import SystemLogService


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeRedis:
    """Just enough of redis.asyncio for caches, locks and alert cooldowns."""

    def __init__(self):
        self.store: dict[str, Any] = {}
        self.expiries: dict[str, Optional[int]] = {}
        self.extensions: list[str] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiries[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expiries.pop(key, None)
        return removed

    async def eval(self, script, numkeys, key, value, *args):
        """Compare-and-delete, or compare-and-expire when a TTL argument is passed."""
        if self.store.get(key) != value:
            return 0
        if args:
            self.expiries[key] = int(args[0])
            self.extensions.append(key)
            return 1
        return await self.delete(key)

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        return True

    async def aclose(self):
        return None


class FakeStorage(Storage):
    """In-memory Storage. Records every write for assertions."""

    def __init__(self):
        self.rules: list[dict] = []
        self.amocrm_settings: dict[str, dict] = {}
        self.lptracker_settings: dict[str, dict] = {}
        self.global_settings: Optional[dict] = None
        self.metadata: dict[tuple, Any] = {}
        self.markers: set[tuple] = set()
        self.executions: dict[int, int] = {}
        self.system_logs: list[dict] = []
        self.token_updates: list[Optional[str]] = []

    async def get_sync_rules(self, tenant_id, webhook_source=None):
        return [
            dict(r) for r in self.rules
            if r["tenant_id"] == tenant_id
            and (webhook_source is None or r["webhook_source"] == webhook_source)
        ]

    async def get_amocrm_settings(self, tenant_id):
        return self.amocrm_settings.get(tenant_id)

    async def get_lptracker_settings(self, tenant_id):
        return self.lptracker_settings.get(tenant_id)

    async def get_lptracker_global_settings(self):
        return self.global_settings

    async def update_lptracker_token(self, token):
        self.token_updates.append(token)
        if self.global_settings is not None:
            self.global_settings["token"] = token

    async def find_tenant_by_amocrm_subdomain(self, subdomain):
        bare = normalize_amocrm_subdomain(subdomain)
        for tenant_id, settings in self.amocrm_settings.items():
            if normalize_amocrm_subdomain(settings["subdomain"]) == bare:
                return tenant_id
        return None

    async def find_tenant_by_lptracker_project(self, project_id):
        for tenant_id, settings in self.lptracker_settings.items():
            if str(settings["project_id"]) == str(project_id):
                return tenant_id
        return None

    async def get_metadata(self, tenant_id, provider, type):
        return self.metadata.get((tenant_id, provider, type))

    async def save_metadata(self, tenant_id, provider, type, data):
        self.metadata[(tenant_id, provider, type)] = data

    async def check_webhook_processed(self, tenant_id, provider, entity_id, rule_id, event_timestamp=None):
        return (tenant_id, provider, str(entity_id), rule_id, event_timestamp or "") in self.markers

    async def mark_webhook_processed(self, tenant_id, provider, entity_id, rule_id, event_timestamp=None):
        self.markers.add((tenant_id, provider, str(entity_id), rule_id, event_timestamp or ""))

    async def increment_rule_execution(self, rule_id):
        self.executions[rule_id] = self.executions.get(rule_id, 0) + 1

    async def create_system_log(self, entry):
        self.system_logs.append(entry)


@pytest.fixture(autouse=True)
def fake_redis():
    """Every get_redis() call (locks, alert cooldowns) hits an in-memory fake."""
    redis = FakeRedis()
    with patch("crmbridge.utils.redis_client.get_redis", new=AsyncMock(return_value=redis)):
        yield redis


@pytest.fixture
async def session_factory():
    """In-memory SQLite database for storage tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def cache(fake_redis):
    async def factory():
        return fake_redis
    return CrmCache(redis_factory=factory)


@pytest.fixture
def system_log(storage):
    return SystemLogService(storage)


@pytest.fixture
def amocrm_contacts_fields():
    """Raw AmoCRM /api/v4/contacts/custom_fields response."""
    return {
        "_embedded": {
            "custom_fields": [
                {"id": 101, "code": "PHONE", "name": "Phone", "type": "multitext"},
                {"id": 102, "code": "EMAIL", "name": "Email", "type": "multitext"},
                {"id": 555, "code": None, "name": "Source", "type": "text"},
            ]
        }
    }


@pytest.fixture
def amocrm_context():
    """Enriched AmoCRM lead event."""
    return EventContext(
        provider="amocrm",
        tenant_id="tenant-1",
        entity_id="9001",
        event_timestamp="1700000000",
        action="status",
        webhook_fields={"id": "9001", "pipeline_id": "42", "status_id": "142"},
        lead={
            "id": 9001,
            "name": "Kitchen renovation",
            "price": 150000,
            "pipeline_id": 42,
            "status_id": 142,
            "custom_fields_values": [
                {"field_id": 700, "field_name": "City", "values": [{"value": "Moscow"}]},
            ],
        },
        contacts=[{
            "id": 501,
            "name": "Ivan Petrov",
            "first_name": "Ivan",
            "last_name": "Petrov",
            "custom_fields_values": [
                {"field_id": 101, "field_code": "PHONE", "values": [{"value": "+79001234567", "enum_code": "WORK"}]},
                {"field_id": 102, "field_code": "EMAIL", "values": [{"value": "ivan@example.com"}]},
                {"field_id": 800, "field_name": "Segment", "values": [{"value": "vip"}]},
            ],
        }],
    )


@pytest.fixture
def lptracker_context():
    """Enriched LPTracker lead event."""
    return EventContext(
        provider="lptracker",
        tenant_id="tenant-1",
        entity_id="3001",
        event_timestamp="2024-01-01 10:00:00",
        action="lead_status_updated",
        webhook_fields={"id": 3001, "project_id": 77, "pipeline_id": 77, "status_id": 5},
        lead={"id": 3001, "name": "Website order", "project_id": 77, "funnel": 5},
        contacts=[{
            "id": 61,
            "name": "Anna",
            "details": [
                {"type": "phone", "data": "+79005554433"},
                {"type": "email", "data": "anna@example.com"},
            ],
        }],
        custom_fields=[{"id": "900", "name": "Utm source", "value": "yandex"}],
    )
