"""
Abstract CRM connector - AmoCRM and LPTracker both implement this.

Connectors own provider auth and HTTP semantics. Contact and lead failures
raise CRMError subclasses; note/task failures are logged and swallowed
per item. Every HTTP call uses a bounded timeout; transport errors and
timeouts surface as retryable CRMErrors.
"""
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from crmbridge.schemas.sync_rule import SyncAction
from crmbridge.schemas.webhook_payloads import MappingResult

DEFAULT_CONTACT_NAME = "New contact"
DEFAULT_LEAD_NAME = "New lead"


class CRMError(Exception):
    """A CRM call failed. `retryable` marks failures worth a queue retry."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AmoCRMError(CRMError):
    pass


class LPTrackerError(CRMError):
    pass


def is_retryable_status(status_code: Optional[int]) -> bool:
    return status_code is not None and (status_code == 429 or status_code >= 500)


class SyncResult(BaseModel):
    """Outcome of one sync action."""
    contact: Optional[dict[str, Any]] = None
    lead: Optional[dict[str, Any]] = None
    contact_created: bool = False
    lead_created: bool = False
    notes_created: int = 0
    tasks_created: int = 0
    skipped_reason: Optional[str] = None
    errors: list[str] = Field(default_factory=list)


class CRMConnector(ABC):
    """Abstract base class for CRM connectors."""

    provider: str = ""

    @abstractmethod
    async def sync(
        self,
        tenant_id: str,
        mapped: MappingResult,
        search_by: str,
        action: SyncAction,
    ) -> SyncResult:
        """
        Find or create the contact, then update its linked lead or create one.
        Notes and tasks are attached to the lead afterwards, best-effort.
        """
        ...

    @abstractmethod
    async def get_lead(self, tenant_id: str, lead_id: str) -> dict:
        """Full lead record including linked contacts where the provider embeds them."""
        ...

    @abstractmethod
    async def test_connection(self, tenant_id: str) -> bool:
        """True when the stored credentials can read from the provider."""
        ...

    @abstractmethod
    async def refresh_metadata(self, tenant_id: str) -> dict:
        """
        Reload pipelines / funnels and custom field definitions, save them via
        storage and refill the metadata cache.
        Returns: {metadata_type: item_count}
        """
        ...
