"""Heuristics deciding which inbound emails never get an automated reply."""

from __future__ import annotations

import re
from collections.abc import Iterable
from enum import Enum

from ..config import EmailFilterSettings

_REPLY_MARKER = re.compile(r"\b(?:re|fw|fwd|aw|sv|antw)\s*(?:\[\d+\])?\s*:", re.IGNORECASE)
_PREFIX_SEPARATORS = "-_.+0123456789"


class SkipReason(str, Enum):
    DUPLICATE = "duplicate"
    OWN_ADDRESS = "own_address"
    AUTOMATED_SENDER = "automated_sender"
    AUTOMATED_SUBJECT = "automated_subject"
    STALE_THREAD = "stale_thread"


def count_reply_markers(subject: str) -> int:
    return len(_REPLY_MARKER.findall(subject or ""))


class EmailFilter:
    """Apply the configured sender, subject and thread-depth rules."""

    def __init__(self, settings: EmailFilterSettings) -> None:
        self._settings = settings

    def is_automated_sender(self, address: str) -> bool:
        local, _, domain = address.lower().rpartition("@")
        for prefix in self._settings.sender_prefixes:
            if local == prefix:
                return True
            if local.startswith(prefix) and local[len(prefix)] in _PREFIX_SEPARATORS:
                return True
        for blocked in self._settings.sender_domains:
            if domain == blocked or domain.endswith("." + blocked):
                return True
        return False

    def is_automated_subject(self, subject: str) -> bool:
        lowered = (subject or "").lower()
        return any(phrase in lowered for phrase in self._settings.subject_phrases)

    def skip_reason(
        self, sender: str, subject: str, own_addresses: Iterable[str]
    ) -> SkipReason | None:
        """Return why the message must not be answered, or ``None``."""

        if sender.lower() in {address.lower() for address in own_addresses if address}:
            return SkipReason.OWN_ADDRESS
        if self.is_automated_sender(sender):
            return SkipReason.AUTOMATED_SENDER
        if self.is_automated_subject(subject):
            return SkipReason.AUTOMATED_SUBJECT
        if count_reply_markers(subject) >= self._settings.stale_reply_markers:
            return SkipReason.STALE_THREAD
        return None


__all__ = ["EmailFilter", "SkipReason", "count_reply_markers"]
