"""Conversation threading, storage and de-duplication."""

from . import schemas
from .dedup import ProcessedMessageLog, ProcessedMessageStore
from .models import ChannelType, ConversationStatus, MessageRole, NormalizedMessage
from .repository import ConversationRepository, SqlConversationRepository
from .service import ConversationService

__all__ = [
    "ChannelType",
    "ConversationRepository",
    "ConversationService",
    "ConversationStatus",
    "MessageRole",
    "NormalizedMessage",
    "ProcessedMessageLog",
    "ProcessedMessageStore",
    "SqlConversationRepository",
    "schemas",
]
