"""Exception taxonomy shared by channel drivers, services and routers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .outbound.quota import QuotaDecision


class GatewayError(RuntimeError):
    """Base class for gateway domain errors."""


class ChannelConnectionError(GatewayError):
    """Raised when a transport probe or mailbox connection fails."""


class DecryptionError(GatewayError):
    """Raised when a stored credential cannot be decrypted.

    Callers treat this as "credential needs re-entry" rather than a fatal
    process error.
    """


class AccessDenied(GatewayError):
    """Raised when a caller targets a tenant other than its own."""


class DuplicateMessage(GatewayError):
    """Raised when an inbound message identifier was already processed."""


class ReplyGenerationFailure(GatewayError):
    """Raised when the reasoning service cannot produce reply text."""


class DispatchFailure(GatewayError):
    """Raised when an outbound send fails."""


class QuotaExceeded(GatewayError):
    """Raised when the shared sender exhausted its daily allowance."""

    def __init__(self, decision: "QuotaDecision") -> None:
        super().__init__(
            f"Daily send limit reached ({decision.limit}); resets at "
            f"{decision.resets_at.isoformat()}"
        )
        self.decision = decision


class ChannelNotConnected(GatewayError):
    """Raised when a tenant has no active channel of the requested type."""


class TenantNotFound(GatewayError):
    """Raised when a tenant record does not exist."""


class ConversationNotFound(GatewayError):
    """Raised when a conversation is missing or belongs to another tenant."""


__all__ = [
    "AccessDenied",
    "ChannelConnectionError",
    "ChannelNotConnected",
    "ConversationNotFound",
    "DecryptionError",
    "DispatchFailure",
    "DuplicateMessage",
    "GatewayError",
    "QuotaExceeded",
    "ReplyGenerationFailure",
    "TenantNotFound",
]
