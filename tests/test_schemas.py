"""
Tests for crmbridge/schemas - rule action coercion and the system log service.
"""
from crmbridge.schemas.sync_rule import ConditionTree, SyncAction
from crmbridge.services.system_log import SystemLogService
from crmbridge.utils.logging import set_correlation_id


class TestSyncAction:
    def test_camel_case_keys(self):
        action = SyncAction.model_validate({
            "type": "sync_to_amocrm",
            "searchBy": "email",
            "fieldMappings": {"phone": "phone"},
            "createIfNotFound": False,
            "amocrmPipelineId": 42,
            "amocrmStatusId": "",
        })
        assert action.search_by == "email"
        assert action.field_mappings == {"phone": "phone"}
        assert action.create_if_not_found is False
        assert action.amocrm_pipeline_id == "42"
        assert action.amocrm_status_id is None

    def test_defaults_and_fallbacks(self):
        action = SyncAction.model_validate({
            "type": "sync_to_lptracker", "searchBy": "telegram", "fieldMappings": ["bad"],
        })
        assert action.search_by == "phone"
        assert action.field_mappings == {}
        assert action.create_if_not_found is True

    def test_snake_case_accepted(self):
        action = SyncAction(type="sync_to_lptracker", lptracker_stage_id=5)
        assert action.lptracker_stage_id == "5"


def test_condition_tree_defaults():
    tree = ConditionTree.model_validate({"rules": [{"type": "pipeline", "value": 1}]})
    assert tree.operator == "AND"
    assert tree.rules[0].type == "pipeline"


class TestSystemLogService:
    async def test_writes_entry_with_correlation_id(self, storage, system_log):
        set_correlation_id("cid-1")
        await system_log.error("Action failed", tenant_id="t1", data={"rule_id": 1}, source="sync")
        assert storage.system_logs == [{
            "tenant_id": "t1",
            "level": "error",
            "message": "Action failed",
            "data": {"rule_id": 1},
            "source": "sync",
            "correlation_id": "cid-1",
        }]

    async def test_sink_failure_is_swallowed(self, storage):
        storage.create_system_log = None  # calling it raises TypeError
        service = SystemLogService(storage)
        await service.info("still fine")
