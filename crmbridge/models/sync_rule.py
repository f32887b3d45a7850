"""
Synchronization rule - "if conditions then actions" for one webhook source.

conditions: {"operator": "AND"|"OR", "rules": [{"type": ..., "field": ..., "value": ...}]}
actions:    {"list": [{"type": "sync_to_amocrm"|"sync_to_lptracker", "searchBy": ..., "fieldMappings": {...}}]}

Rules are authored by the rule-builder UI and consumed read-only by the
engine, apart from execution_count.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Integer, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from crmbridge.database import Base


class SyncRule(Base):
    __tablename__ = "sync_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_source: Mapped[str] = mapped_column(String(20), nullable=False)  # amocrm, lptracker
    conditions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    actions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_sync_rules_tenant_source", "tenant_id", "webhook_source"),
    )

    def __repr__(self) -> str:
        return f"<SyncRule {self.id} {self.name!r} source={self.webhook_source}>"
