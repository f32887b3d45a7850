"""
System log sink - tenant-visible record of what the engine did and why.
Read by the logs page and admin monitoring (outside this service).
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from crmbridge.database import Base


class SystemLog(Base):
    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64))
    level: Mapped[str] = mapped_column(String(10), nullable=False)  # info, warning, error
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)
    source: Mapped[str] = mapped_column(
        String(50), nullable=False, default="system"
    )  # webhook, sync, webhook-queue, field-mapper, metadata
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_system_logs_tenant_id", "tenant_id"),
        Index("ix_system_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SystemLog {self.level} {self.source}>"
