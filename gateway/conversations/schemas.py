"""Pydantic schemas for conversation read paths and manual replies."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class ConversationMessage(BaseModel):
    id: int
    conversation_id: UUID
    role: str
    content: str
    channel_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime


class ConversationSummary(BaseModel):
    id: UUID
    tenant_id: UUID
    channel_type: str
    participant_key: str
    status: str
    created_at: datetime
    updated_at: datetime


class ConversationDetail(ConversationSummary):
    messages: list[ConversationMessage] = Field(default_factory=list)


class ConversationList(BaseModel):
    items: list[ConversationSummary]
    total: int


class ManualMessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=10_000)


class ManualMessageResponse(BaseModel):
    conversation_id: UUID
    message: ConversationMessage
