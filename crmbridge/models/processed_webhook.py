"""
Idempotency marker - one row per (tenant, provider, entity, rule, event timestamp).

Written after a rule's actions all succeed; checked before running them.
Stops provider redeliveries and overlapping deliveries from writing the
same data to a CRM twice.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from crmbridge.database import Base


class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_timestamp: Mapped[str] = mapped_column(
        String(64), nullable=False, default=""
    )  # "" when the provider sent no timestamp
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "provider", "entity_id", "rule_id", "event_timestamp",
            name="uq_processed_webhooks_key",
        ),
    )
