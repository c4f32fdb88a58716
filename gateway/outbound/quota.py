"""Daily send cap for infrastructure-shared sending identities.

The manager itself is stateless apart from its configuration; the count
lives behind a :class:`QuotaCounter` so one process can use the in-memory
counter while a multi-instance deployment points every instance at the
shared ``send_quotas`` table. Both counters reset and increment in a single
atomic step, so two concurrent senders can never both take the last slot.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import QuotaExceeded
from ..models import SendQuotaRecord
from ..models.session import session_scope

SHARED_SENDER_KEY = "shared-smtp"


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int
    limit: int
    resets_at: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "resets_at": self.resets_at.isoformat(),
        }


class QuotaCounter(Protocol):
    """Atomic reset-on-day-change counter keyed by sender."""

    def consume(self, sender_key: str, date_key: str, limit: int) -> tuple[bool, int]:
        """Increment when below ``limit``; return ``(allowed, count_after)``."""
        ...

    def release(self, sender_key: str, date_key: str) -> int:
        """Give back one slot taken on ``date_key``; return the count after."""
        ...

    def current(self, sender_key: str, date_key: str) -> int: ...


class InMemoryQuotaCounter:
    """Process-local counter guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, tuple[str, int]] = {}

    def consume(self, sender_key: str, date_key: str, limit: int) -> tuple[bool, int]:
        with self._lock:
            stored_date, count = self._counts.get(sender_key, (date_key, 0))
            if stored_date != date_key:
                count = 0
            if count >= limit:
                self._counts[sender_key] = (date_key, count)
                return False, count
            count += 1
            self._counts[sender_key] = (date_key, count)
            return True, count

    def release(self, sender_key: str, date_key: str) -> int:
        with self._lock:
            stored_date, count = self._counts.get(sender_key, (date_key, 0))
            if stored_date != date_key:
                return 0
            count = max(count - 1, 0)
            self._counts[sender_key] = (date_key, count)
            return count

    def current(self, sender_key: str, date_key: str) -> int:
        with self._lock:
            stored_date, count = self._counts.get(sender_key, (date_key, 0))
            return count if stored_date == date_key else 0


class SqlQuotaCounter:
    """Counter stored in ``send_quotas``; safe across processes.

    The reset and the conditional increment happen in one ``UPDATE``: the
    row is only touched when the day changed or the count is below the
    limit, so the affected row count tells whether the send was allowed.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def _ensure_row(self, sender_key: str, date_key: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                if session.get(SendQuotaRecord, sender_key) is None:
                    session.add(
                        SendQuotaRecord(sender_key=sender_key, date_key=date_key, count_sent=0)
                    )
        except IntegrityError:
            # Another instance inserted the row first.
            pass

    def consume(self, sender_key: str, date_key: str, limit: int) -> tuple[bool, int]:
        self._ensure_row(sender_key, date_key)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(SendQuotaRecord)
                .where(
                    SendQuotaRecord.sender_key == sender_key,
                    (SendQuotaRecord.date_key != date_key)
                    | (SendQuotaRecord.count_sent < limit),
                )
                .values(
                    count_sent=case(
                        (SendQuotaRecord.date_key == date_key, SendQuotaRecord.count_sent + 1),
                        else_=1,
                    ),
                    date_key=date_key,
                )
                .execution_options(synchronize_session=False)
            )
            allowed = result.rowcount == 1
            count = session.scalar(
                select(SendQuotaRecord.count_sent).where(SendQuotaRecord.sender_key == sender_key)
            )
        return allowed, int(count or 0)

    def release(self, sender_key: str, date_key: str) -> int:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(SendQuotaRecord)
                .where(
                    SendQuotaRecord.sender_key == sender_key,
                    SendQuotaRecord.date_key == date_key,
                    SendQuotaRecord.count_sent > 0,
                )
                .values(count_sent=SendQuotaRecord.count_sent - 1)
                .execution_options(synchronize_session=False)
            )
        return self.current(sender_key, date_key)

    def current(self, sender_key: str, date_key: str) -> int:
        with session_scope(self._session_factory) as session:
            record = session.get(SendQuotaRecord, sender_key)
            if record is None or record.date_key != date_key:
                return 0
            return record.count_sent


class OutboundQuotaManager:
    """Enforce ``daily_limit`` sends per calendar day for one shared sender."""

    def __init__(
        self,
        counter: QuotaCounter,
        daily_limit: int,
        *,
        sender_key: str = SHARED_SENDER_KEY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if daily_limit < 0:
            raise ValueError("daily_limit must not be negative")
        self._counter = counter
        self.daily_limit = daily_limit
        self.sender_key = sender_key
        self._clock = clock or _local_now

    @staticmethod
    def _date_key(day: date) -> str:
        return day.isoformat()

    @staticmethod
    def _next_midnight(now: datetime) -> datetime:
        return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)

    def try_consume(self) -> QuotaDecision:
        """Take one send slot for today, if any is left."""

        now = self._clock()
        allowed, count = self._counter.consume(
            self.sender_key, self._date_key(now.date()), self.daily_limit
        )
        remaining = max(self.daily_limit - count, 0) if allowed else 0
        return QuotaDecision(
            allowed=allowed,
            remaining=remaining,
            limit=self.daily_limit,
            resets_at=self._next_midnight(now),
        )

    def consume_or_raise(self) -> QuotaDecision:
        decision = self.try_consume()
        if not decision.allowed:
            raise QuotaExceeded(decision)
        return decision

    def release(self, decision: QuotaDecision) -> QuotaDecision:
        """Return the slot taken by ``decision`` when nothing was sent.

        The slot goes back to the day it was taken from; after midnight the
        release has no effect.
        """

        if not decision.allowed:
            return decision
        day = (decision.resets_at - timedelta(days=1)).date()
        self._counter.release(self.sender_key, self._date_key(day))
        return self.status()

    def status(self) -> QuotaDecision:
        """Report today's usage without consuming a slot."""

        now = self._clock()
        count = self._counter.current(self.sender_key, self._date_key(now.date()))
        remaining = max(self.daily_limit - count, 0)
        return QuotaDecision(
            allowed=remaining > 0,
            remaining=remaining,
            limit=self.daily_limit,
            resets_at=self._next_midnight(now),
        )


__all__ = [
    "InMemoryQuotaCounter",
    "OutboundQuotaManager",
    "QuotaCounter",
    "QuotaDecision",
    "SHARED_SENDER_KEY",
    "SqlQuotaCounter",
]
