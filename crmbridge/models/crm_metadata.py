"""
Cached CRM metadata (pipelines, custom field definitions, funnels, projects).
Refreshed from the provider APIs; the field mapper reads it to resolve
AmoCRM's numeric phone/email field ids.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from crmbridge.database import Base


class CrmMetadata(Base):
    __tablename__ = "crm_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)  # amocrm, lptracker
    type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # pipelines, leads_fields, contacts_fields, projects, custom_fields, funnel
    data: Mapped[Optional[dict]] = mapped_column(JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", "type", name="uq_crm_metadata_tenant_provider_type"),
    )

    def __repr__(self) -> str:
        return f"<CrmMetadata {self.provider}/{self.type} tenant={self.tenant_id}>"
