"""Domain models shared by the channel drivers and the conversation store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


class ChannelType(str, Enum):
    EMAIL = "email"
    BOT = "bot"
    BUSINESS_MESSAGING = "business_messaging"


class MessageRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class NormalizedMessage:
    """Uniform representation of an inbound customer message.

    ``participant_key`` is the channel-level identity of the customer (email
    address, chat id or phone number) and decides which conversation the
    message threads onto. ``channel_ref`` is the provider identifier used for
    de-duplication (Message-ID, update id, wamid).
    """

    tenant_id: UUID
    channel_type: ChannelType
    participant_key: str
    text: str
    channel_ref: str | None = None
    sender_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = ["ChannelType", "ConversationStatus", "MessageRole", "NormalizedMessage"]
