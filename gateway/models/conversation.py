"""Conversation and message models."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Conversation(Base):
    """Thread with one external participant on one channel for one tenant.

    The partial unique index keeps a participant key unique among active
    conversations of a (tenant, channel type) pair; concurrent creators rely
    on it to converge on a single row.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "ux_conversations_active_participant",
            "tenant_id",
            "channel_type",
            "participant_key",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False, index=True)
    channel_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    participant_key: Mapped[str] = mapped_column(String(length=320), nullable=False)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False, default="active")
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    messages: Mapped[List["ConversationMessage"]] = relationship(
        back_populates="conversation",
        order_by="ConversationMessage.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ConversationMessage(Base):
    """Immutable turn within a conversation; ordered by insertion id."""

    __tablename__ = "conversation_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    role: Mapped[str] = mapped_column(String(length=16), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    channel_ref: Mapped[str | None] = mapped_column(String(length=512))
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    sent_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")


__all__ = ["Conversation", "ConversationMessage"]
