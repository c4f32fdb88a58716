"""High-level conversation flow used by channel drivers and the dashboard."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from ..errors import ConversationNotFound
from . import schemas
from .models import ChannelType, MessageRole, NormalizedMessage
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20


class ConversationService:
    """Thread inbound and outbound turns into per-tenant conversations."""

    def __init__(self, repository: ConversationRepository) -> None:
        self._repository = repository

    def thread(self, message: NormalizedMessage) -> schemas.ConversationSummary:
        """Return the conversation ``message`` belongs to, creating it lazily."""

        return self._repository.find_or_create(
            message.tenant_id, ChannelType(message.channel_type).value, message.participant_key
        )

    def history(
        self, tenant_id: UUID, conversation_id: UUID, limit: int = HISTORY_WINDOW
    ) -> list[schemas.ConversationMessage]:
        return self._repository.recent_messages(tenant_id, conversation_id, limit)

    def record_inbound(
        self, conversation: schemas.ConversationSummary, message: NormalizedMessage
    ) -> schemas.ConversationMessage:
        metadata = dict(message.metadata)
        if message.sender_name:
            metadata.setdefault("sender_name", message.sender_name)
        return self._repository.append_message(
            message.tenant_id,
            conversation.id,
            role=MessageRole.CUSTOMER.value,
            content=message.text,
            channel_ref=message.channel_ref,
            metadata=metadata,
            sent_at=message.sent_at,
        )

    def record_outbound(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        text: str,
        *,
        channel_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.ConversationMessage:
        return self._repository.append_message(
            tenant_id,
            conversation_id,
            role=MessageRole.AGENT.value,
            content=text,
            channel_ref=channel_ref,
            metadata=metadata,
        )

    def list_conversations(
        self, tenant_id: UUID, channel_type: str | None = None, limit: int = 50
    ) -> schemas.ConversationList:
        if channel_type is not None:
            channel_type = ChannelType(channel_type).value
        return self._repository.list_for_tenant(tenant_id, channel_type, limit)

    def get_conversation(
        self, tenant_id: UUID, conversation_id: UUID
    ) -> schemas.ConversationDetail:
        conversation = self._repository.get(tenant_id, conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conversation

    @staticmethod
    def last_customer_message(
        conversation: schemas.ConversationDetail,
    ) -> schemas.ConversationMessage | None:
        for message in reversed(conversation.messages):
            if message.role == MessageRole.CUSTOMER.value:
                return message
        return None


__all__ = ["ConversationService", "HISTORY_WINDOW"]
