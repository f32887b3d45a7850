"""
Database models - import all models here so Alembic can discover them.
"""
from crmbridge.models.crm_settings import AmoCrmSettings, LpTrackerSettings, LpTrackerGlobalSettings
from crmbridge.models.crm_metadata import CrmMetadata
from crmbridge.models.sync_rule import SyncRule
from crmbridge.models.processed_webhook import ProcessedWebhook
from crmbridge.models.system_log import SystemLog

__all__ = [
    "AmoCrmSettings",
    "LpTrackerSettings",
    "LpTrackerGlobalSettings",
    "CrmMetadata",
    "SyncRule",
    "ProcessedWebhook",
    "SystemLog",
]
