"""Channel connection, de-duplication and send quota models."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class TenantChannel(Base):
    """One connection record per (tenant, channel type).

    ``endpoint_config`` only ever holds non-secret values (hosts, ports, bot
    identity, toggles). Secrets live encrypted in ``encrypted_secret`` and are
    never serialised by read paths. Rows are deactivated, never deleted.
    """

    __tablename__ = "tenant_channels"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_type", name="uq_tenant_channels_tenant_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    channel_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    endpoint_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    encrypted_secret: Mapped[str] = mapped_column(Text(), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_activity_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ProcessedMessageLogRecord(Base):
    """Persisted window of channel message ids already handled for a tenant."""

    __tablename__ = "processed_message_logs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "channel_type", name="uq_processed_logs_tenant_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    channel_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    message_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class SendQuotaRecord(Base):
    """Daily send counter for one shared sending identity."""

    __tablename__ = "send_quotas"

    sender_key: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    date_key: Mapped[str] = mapped_column(String(length=10), nullable=False)
    count_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


__all__ = ["ProcessedMessageLogRecord", "SendQuotaRecord", "TenantChannel"]
