"""Tenant account model.

A tenant is an isolated customer of the platform. The row doubles as the
login identity for the dashboard and as the business profile handed to the
reasoning service when replies are generated.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import DateTime, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class Tenant(Base):
    """Represents a tenant of the gateway.

    Attributes:
        id: Primary key, also used as the ``tenant_id`` claim of session tokens.
        name: Display name of the account.
        email: Unique login address.
        password_hash: Argon2 hash of the login password.
        business_name: Name the automated agent speaks for.
        tone: Tone preset used when building the reply prompt.
        knowledge_base: Free-form facts the agent may rely on.
    """

    __tablename__ = "tenants"
    __table_args__ = (Index("ix_tenants_email_unique", "email", unique=True),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    email: Mapped[str] = mapped_column(String(length=320), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(length=255), nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(length=255))
    tone: Mapped[str] = mapped_column(String(length=64), nullable=False, default="friendly")
    knowledge_base: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


__all__ = ["Tenant"]
