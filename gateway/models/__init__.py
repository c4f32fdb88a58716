"""SQLAlchemy declarative base and gateway models.

This package exposes a single declarative ``Base`` class shared by every
model. Individual models live in dedicated modules within this package and
are re-exported here so callers can import them from ``gateway.models``.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


from .channel import ProcessedMessageLogRecord, SendQuotaRecord, TenantChannel  # noqa: E402
from .conversation import Conversation, ConversationMessage  # noqa: E402
from .tenant import Tenant  # noqa: E402

__all__ = [
    "Base",
    "Conversation",
    "ConversationMessage",
    "ProcessedMessageLogRecord",
    "SendQuotaRecord",
    "Tenant",
    "TenantChannel",
]
