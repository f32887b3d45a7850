"""
Tests for crmbridge/services/storage.py against in-memory SQLite.
"""
import pytest
from sqlalchemy import select

from crmbridge.models import (
    AmoCrmSettings,
    CrmMetadata,
    LpTrackerGlobalSettings,
    LpTrackerSettings,
    SyncRule,
    SystemLog,
)
from crmbridge.services.storage import DatabaseStorage, normalize_amocrm_subdomain


@pytest.fixture
def db_storage(session_factory):
    return DatabaseStorage(session_factory=session_factory)


async def _add(session_factory, *rows):
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()


class TestNormalizeSubdomain:
    @pytest.mark.parametrize("value", [
        "myco",
        "MyCo",
        "myco.amocrm.ru",
        "https://myco.amocrm.ru",
        "https://MyCo.amocrm.ru/leads/",
        "  http://myco.amocrm.ru  ",
    ])
    def test_variants(self, value):
        assert normalize_amocrm_subdomain(value) == "myco"

    def test_empty(self):
        assert normalize_amocrm_subdomain(None) == ""
        assert normalize_amocrm_subdomain("") == ""


class TestRules:
    async def test_rules_in_stored_order(self, db_storage, session_factory):
        await _add(
            session_factory,
            SyncRule(tenant_id="t1", name="first", webhook_source="amocrm",
                     conditions={"rules": []}, actions={"list": []}),
            SyncRule(tenant_id="t1", name="second", webhook_source="lptracker",
                     conditions={}, actions={}, is_active=False),
            SyncRule(tenant_id="t1", name="third", webhook_source="amocrm",
                     conditions={}, actions={}),
            SyncRule(tenant_id="t2", name="other", webhook_source="amocrm",
                     conditions={}, actions={}),
        )
        rules = await db_storage.get_sync_rules("t1")
        assert [r["name"] for r in rules] == ["first", "second", "third"]
        assert rules[1]["is_active"] is False

        amocrm_rules = await db_storage.get_sync_rules("t1", "amocrm")
        assert [r["name"] for r in amocrm_rules] == ["first", "third"]
        assert amocrm_rules[0]["conditions"] == {"rules": []}
        assert amocrm_rules[0]["execution_count"] == 0

    async def test_increment_execution(self, db_storage, session_factory):
        await _add(session_factory, SyncRule(
            tenant_id="t1", name="r", webhook_source="amocrm", conditions={}, actions={},
        ))
        rule_id = (await db_storage.get_sync_rules("t1"))[0]["id"]
        await db_storage.increment_rule_execution(rule_id)
        await db_storage.increment_rule_execution(rule_id)
        assert (await db_storage.get_sync_rules("t1"))[0]["execution_count"] == 2


class TestSettings:
    async def test_amocrm_settings(self, db_storage, session_factory):
        await _add(session_factory, AmoCrmSettings(
            tenant_id="t1", subdomain="myco", api_key_encrypted="enc",
        ))
        settings = await db_storage.get_amocrm_settings("t1")
        assert settings == {"tenant_id": "t1", "subdomain": "myco", "api_key": "enc", "is_active": True}
        assert await db_storage.get_amocrm_settings("t2") is None

    async def test_find_tenant_by_subdomain(self, db_storage, session_factory):
        await _add(
            session_factory,
            AmoCrmSettings(tenant_id="t1", subdomain="myco", api_key_encrypted="k"),
            AmoCrmSettings(tenant_id="t2", subdomain="https://Other.amocrm.ru/", api_key_encrypted="k"),
            AmoCrmSettings(tenant_id="t3", subdomain="gone", api_key_encrypted="k", is_active=False),
        )
        assert await db_storage.find_tenant_by_amocrm_subdomain("myco.amocrm.ru") == "t1"
        assert await db_storage.find_tenant_by_amocrm_subdomain("other") == "t2"
        assert await db_storage.find_tenant_by_amocrm_subdomain("gone") is None
        assert await db_storage.find_tenant_by_amocrm_subdomain("") is None

    async def test_find_tenant_by_project(self, db_storage, session_factory):
        await _add(session_factory, LpTrackerSettings(tenant_id="t1", project_id="77"))
        assert await db_storage.find_tenant_by_lptracker_project("77") == "t1"
        assert await db_storage.find_tenant_by_lptracker_project("78") is None
        settings = await db_storage.get_lptracker_settings("t1")
        assert settings["project_id"] == "77"
        assert settings["webhook_active"] is False

    async def test_global_settings_and_token(self, db_storage, session_factory):
        assert await db_storage.get_lptracker_global_settings() is None
        await _add(session_factory, LpTrackerGlobalSettings(login="robot", password_encrypted="pw"))

        await db_storage.update_lptracker_token("tok")
        settings = await db_storage.get_lptracker_global_settings()
        assert settings["login"] == "robot"
        assert settings["password"] == "pw"
        assert settings["token"] == "tok"
        assert settings["token_updated_at"]
        assert settings["address"] == "direct.lptracker.ru"

        await db_storage.update_lptracker_token(None)
        assert (await db_storage.get_lptracker_global_settings())["token"] is None


class TestMetadata:
    async def test_save_is_upsert(self, db_storage, session_factory):
        await db_storage.save_metadata("t1", "amocrm", "pipelines", {"v": 1})
        await db_storage.save_metadata("t1", "amocrm", "pipelines", {"v": 2})
        assert await db_storage.get_metadata("t1", "amocrm", "pipelines") == {"v": 2}
        assert await db_storage.get_metadata("t1", "amocrm", "leads_fields") is None

        async with session_factory() as db:
            rows = (await db.execute(select(CrmMetadata))).scalars().all()
        assert len(rows) == 1


class TestIdempotency:
    async def test_mark_and_check(self, db_storage):
        args = ("t1", "amocrm", "9001", 1, "1700000000")
        assert await db_storage.check_webhook_processed(*args) is False
        await db_storage.mark_webhook_processed(*args)
        assert await db_storage.check_webhook_processed(*args) is True
        assert await db_storage.check_webhook_processed("t1", "amocrm", "9001", 2, "1700000000") is False

    async def test_duplicate_mark_is_ignored(self, db_storage):
        args = ("t1", "lptracker", "3001", 1, None)
        await db_storage.mark_webhook_processed(*args)
        await db_storage.mark_webhook_processed(*args)
        assert await db_storage.check_webhook_processed("t1", "lptracker", "3001", 1, "") is True


async def test_create_system_log(db_storage, session_factory):
    await db_storage.create_system_log({
        "tenant_id": "t1",
        "level": "error",
        "message": "Action failed",
        "data": {"rule_id": 1},
        "source": "sync",
        "correlation_id": "abc",
    })
    async with session_factory() as db:
        log = (await db.execute(select(SystemLog))).scalar_one()
    assert log.level == "error"
    assert log.data == {"rule_id": 1}
    assert log.source == "sync"
    assert log.correlation_id == "abc"
