"""
Per-tenant CRM connection settings plus the shared LPTracker account.

AmoCRM: one long-lived API key per tenant, Fernet-encrypted at rest.
LPTracker: one global login/password (superuser-managed) exchanged for a
token that is shared by every tenant; each tenant owns a project id.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column
from crmbridge.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AmoCrmSettings(Base):
    __tablename__ = "amocrm_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subdomain: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_amocrm_settings_subdomain", "subdomain"),
    )

    def __repr__(self) -> str:
        return f"<AmoCrmSettings tenant={self.tenant_id} subdomain={self.subdomain}>"


class LpTrackerSettings(Base):
    __tablename__ = "lptracker_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    webhook_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_lptracker_settings_project_id", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<LpTrackerSettings tenant={self.tenant_id} project={self.project_id}>"


class LpTrackerGlobalSettings(Base):
    __tablename__ = "lptracker_global_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    login: Mapped[str] = mapped_column(String(255), nullable=False)
    password_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    service: Mapped[str] = mapped_column(String(100), default="CRM Integration")
    address: Mapped[str] = mapped_column(String(255), default="direct.lptracker.ru")
    token: Mapped[Optional[str]] = mapped_column(Text)
    token_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<LpTrackerGlobalSettings login={self.login} address={self.address}>"
