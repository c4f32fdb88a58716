"""Bounded de-duplication log for at-least-once channel deliveries.

Each (tenant, channel type) pair keeps a window of the most recent provider
message identifiers. The window is a ring buffer plus a set, so membership is
O(1) and memory is capped by ``capacity``. The window is persisted as a
single row guarded by an optimistic ``version`` column: concurrent writers
re-read and merge their additions instead of overwriting each other.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import DuplicateMessage
from ..models import ProcessedMessageLogRecord
from ..models.session import session_scope

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5000
MAX_SAVE_ATTEMPTS = 5


class ProcessedMessageLog:
    """Capacity-bounded set of recently handled message identifiers."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, ids: Iterable[str] = (), version: int = 0):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.version = version
        self._order: deque[str] = deque()
        self._members: set[str] = set()
        self._pending: list[str] = []
        for message_id in ids:
            self._remember(message_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._members

    def __len__(self) -> int:
        return len(self._order)

    def _remember(self, message_id: str) -> bool:
        if message_id in self._members:
            return False
        if len(self._order) >= self.capacity:
            evicted = self._order.popleft()
            self._members.discard(evicted)
        self._order.append(message_id)
        self._members.add(message_id)
        return True

    def add(self, message_id: str) -> bool:
        """Record ``message_id``; return ``False`` when it was already present."""

        added = self._remember(message_id)
        if added:
            self._pending.append(message_id)
        return added

    @property
    def pending(self) -> list[str]:
        """Identifiers added since the log was loaded or last saved."""

        return list(self._pending)

    def snapshot(self) -> list[str]:
        return list(self._order)

    def mark_saved(self, version: int) -> None:
        self.version = version
        self._pending.clear()


class ProcessedMessageStore:
    """Load and save :class:`ProcessedMessageLog` windows."""

    def __init__(
        self, session_factory: sessionmaker[Session], *, capacity: int = DEFAULT_CAPACITY
    ) -> None:
        self._session_factory = session_factory
        self.capacity = capacity

    @staticmethod
    def _select(session: Session, tenant_id: UUID, channel_type: str):
        return session.scalars(
            select(ProcessedMessageLogRecord).where(
                ProcessedMessageLogRecord.tenant_id == tenant_id,
                ProcessedMessageLogRecord.channel_type == channel_type,
            )
        ).first()

    def load(self, tenant_id: UUID, channel_type: str) -> ProcessedMessageLog:
        with session_scope(self._session_factory) as session:
            record = self._select(session, tenant_id, channel_type)
            if record is None:
                return ProcessedMessageLog(self.capacity)
            return ProcessedMessageLog(
                self.capacity, record.message_ids or [], version=record.version
            )

    def save(self, tenant_id: UUID, channel_type: str, log: ProcessedMessageLog) -> None:
        """Persist the pending additions of ``log``.

        Uses compare-and-set on ``version``; when another writer won the race
        the stored window is re-read and the pending ids merged on top of it.
        """

        if not log.pending:
            return
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            if self._try_save(tenant_id, channel_type, log):
                return
            logger.debug(
                "Processed-id log for %s/%s changed concurrently (attempt %d)",
                tenant_id,
                channel_type,
                attempt,
            )
        raise RuntimeError(
            f"Could not persist processed message ids for {tenant_id}/{channel_type}"
        )

    def _try_save(
        self,
        tenant_id: UUID,
        channel_type: str,
        log: ProcessedMessageLog,
        *,
        strict: bool = False,
    ) -> bool:
        # strict: fail unless the stored window is still the one the log was loaded from
        pending = log.pending
        try:
            with session_scope(self._session_factory) as session:
                record = self._select(session, tenant_id, channel_type)
                if record is None:
                    merged = ProcessedMessageLog(self.capacity)
                    for message_id in pending:
                        merged.add(message_id)
                    session.add(
                        ProcessedMessageLogRecord(
                            tenant_id=tenant_id,
                            channel_type=channel_type,
                            message_ids=merged.snapshot(),
                            version=1,
                        )
                    )
                    session.flush()
                    new_version = 1
                else:
                    current_version = record.version
                    if strict and current_version != log.version:
                        return False
                    merged = ProcessedMessageLog(self.capacity, record.message_ids or [])
                    for message_id in pending:
                        merged.add(message_id)
                    result = session.execute(
                        update(ProcessedMessageLogRecord)
                        .where(
                            ProcessedMessageLogRecord.id == record.id,
                            ProcessedMessageLogRecord.version == current_version,
                        )
                        .values(message_ids=merged.snapshot(), version=current_version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        return False
                    new_version = current_version + 1
        except IntegrityError:
            return False
        log.mark_saved(new_version)
        return True

    def claim(self, tenant_id: UUID, channel_type: str, message_id: str) -> None:
        """Atomically record a single webhook delivery id.

        Raises:
            DuplicateMessage: If ``message_id`` was already processed.
        """

        for _ in range(MAX_SAVE_ATTEMPTS):
            log = self.load(tenant_id, channel_type)
            if not log.add(message_id):
                raise DuplicateMessage(message_id)
            if self._try_save(tenant_id, channel_type, log, strict=True):
                return
        raise RuntimeError(f"Could not claim message id {message_id} for {tenant_id}")


__all__ = ["DEFAULT_CAPACITY", "ProcessedMessageLog", "ProcessedMessageStore"]
