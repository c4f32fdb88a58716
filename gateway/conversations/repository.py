"""Database repository for conversations."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ..models import Conversation, ConversationMessage
from ..models.session import session_scope
from . import schemas
from .models import ConversationStatus

logger = logging.getLogger(__name__)


class ConversationRepository(Protocol):
    """Abstraction for persisting conversation threads and their turns."""

    def find_or_create(
        self, tenant_id: UUID, channel_type: str, participant_key: str
    ) -> schemas.ConversationSummary: ...

    def append_message(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        *,
        role: str,
        content: str,
        channel_ref: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        sent_at: Optional[datetime] = None,
    ) -> schemas.ConversationMessage: ...

    def get(
        self, tenant_id: UUID, conversation_id: UUID
    ) -> Optional[schemas.ConversationDetail]: ...

    def list_for_tenant(
        self, tenant_id: UUID, channel_type: Optional[str] = None, limit: int = 50
    ) -> schemas.ConversationList: ...

    def recent_messages(
        self, tenant_id: UUID, conversation_id: UUID, limit: int = 20
    ) -> list[schemas.ConversationMessage]: ...


class SqlConversationRepository:
    """SQLAlchemy implementation of :class:`ConversationRepository`.

    Every query is filtered by ``tenant_id``; a conversation id belonging to
    another tenant behaves exactly like a missing one.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    # Utility -----------------------------------------------------------------
    @staticmethod
    def _select_active(
        session: Session, tenant_id: UUID, channel_type: str, participant_key: str
    ) -> Conversation | None:
        return session.scalars(
            select(Conversation).where(
                Conversation.tenant_id == tenant_id,
                Conversation.channel_type == channel_type,
                Conversation.participant_key == participant_key,
                Conversation.status == ConversationStatus.ACTIVE.value,
            )
        ).first()

    @staticmethod
    def _summary(row: Conversation) -> schemas.ConversationSummary:
        return schemas.ConversationSummary(
            id=row.id,
            tenant_id=row.tenant_id,
            channel_type=row.channel_type,
            participant_key=row.participant_key,
            status=row.status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _message(row: ConversationMessage) -> schemas.ConversationMessage:
        return schemas.ConversationMessage(
            id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,
            content=row.content,
            channel_ref=row.channel_ref,
            metadata=dict(row.extra or {}),
            sent_at=row.sent_at,
        )

    # Conversation operations --------------------------------------------------
    def find_or_create(
        self, tenant_id: UUID, channel_type: str, participant_key: str
    ) -> schemas.ConversationSummary:
        """Return the active conversation for the participant, creating it if needed.

        Concurrent creators race on the partial unique index; the loser rolls
        back its savepoint and reads the winner's row.
        """

        with session_scope(self._session_factory) as session:
            row = self._select_active(session, tenant_id, channel_type, participant_key)
            if row is not None:
                return self._summary(row)
            try:
                with session.begin_nested():
                    row = Conversation(
                        tenant_id=tenant_id,
                        channel_type=channel_type,
                        participant_key=participant_key,
                        status=ConversationStatus.ACTIVE.value,
                    )
                    session.add(row)
            except IntegrityError:
                logger.debug(
                    "Conversation for %s/%s created concurrently; re-reading",
                    channel_type,
                    participant_key,
                )
                row = self._select_active(session, tenant_id, channel_type, participant_key)
                if row is None:
                    raise
            return self._summary(row)

    def append_message(
        self,
        tenant_id: UUID,
        conversation_id: UUID,
        *,
        role: str,
        content: str,
        channel_ref: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        sent_at: Optional[datetime] = None,
    ) -> schemas.ConversationMessage:
        now = datetime.now(timezone.utc)
        with session_scope(self._session_factory) as session:
            conversation = session.scalars(
                select(Conversation).where(
                    Conversation.tenant_id == tenant_id, Conversation.id == conversation_id
                )
            ).first()
            if conversation is None:
                raise LookupError(f"Conversation {conversation_id} not found")
            row = ConversationMessage(
                conversation_id=conversation.id,
                tenant_id=tenant_id,
                role=role,
                content=content,
                channel_ref=channel_ref,
                extra=dict(metadata or {}),
                sent_at=sent_at or now,
            )
            session.add(row)
            conversation.updated_at = now
            session.flush()
            return self._message(row)

    def get(
        self, tenant_id: UUID, conversation_id: UUID
    ) -> Optional[schemas.ConversationDetail]:
        with session_scope(self._session_factory) as session:
            row = session.scalars(
                select(Conversation)
                .options(selectinload(Conversation.messages))
                .where(Conversation.tenant_id == tenant_id, Conversation.id == conversation_id)
            ).first()
            if row is None:
                return None
            summary = self._summary(row)
            return schemas.ConversationDetail(
                **summary.model_dump(),
                messages=[self._message(message) for message in row.messages],
            )

    def list_for_tenant(
        self, tenant_id: UUID, channel_type: Optional[str] = None, limit: int = 50
    ) -> schemas.ConversationList:
        with session_scope(self._session_factory) as session:
            filters = [Conversation.tenant_id == tenant_id]
            if channel_type:
                filters.append(Conversation.channel_type == channel_type)
            total = session.scalar(select(func.count()).select_from(Conversation).where(*filters))
            rows = session.scalars(
                select(Conversation)
                .where(*filters)
                .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
                .limit(limit)
            ).all()
            return schemas.ConversationList(
                items=[self._summary(row) for row in rows], total=int(total or 0)
            )

    def recent_messages(
        self, tenant_id: UUID, conversation_id: UUID, limit: int = 20
    ) -> list[schemas.ConversationMessage]:
        """Return up to ``limit`` latest turns, oldest first."""

        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ConversationMessage)
                .where(
                    ConversationMessage.tenant_id == tenant_id,
                    ConversationMessage.conversation_id == conversation_id,
                )
                .order_by(ConversationMessage.id.desc())
                .limit(limit)
            ).all()
            return [self._message(row) for row in reversed(rows)]


__all__ = ["ConversationRepository", "SqlConversationRepository"]
