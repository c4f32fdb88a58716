"""Runtime helpers for storing tenant-aware request context.

``TenantOwnershipMiddleware`` populates a :class:`contextvars.ContextVar` with
the authenticated tenant once the ownership check passed, and resets it after
the response has been produced. Services called from a request can use
``get_current_tenant_id`` without access to the request object.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing import TypedDict

__all__ = [
    "TenantRuntimeContext",
    "get_current_tenant_id",
    "reset_tenant_context",
    "set_tenant_context",
]


class TenantRuntimeContext(TypedDict):
    """Values stored in the tenant context during a request."""

    tenant_id: str
    user_id: str


_tenant_context: ContextVar[TenantRuntimeContext | None] = ContextVar(
    "tenant_runtime_context", default=None
)


def set_tenant_context(tenant_id: str, user_id: str) -> Token[TenantRuntimeContext | None]:
    """Persist the tenant metadata and return the token needed to reset it."""

    return _tenant_context.set({"tenant_id": tenant_id, "user_id": user_id})


def reset_tenant_context(token: Token[TenantRuntimeContext | None]) -> None:
    _tenant_context.reset(token)


def get_current_tenant_id() -> str | None:
    """Return the tenant identifier for the current execution context, if any."""

    context = _tenant_context.get()
    if context is None:
        return None
    return context["tenant_id"]
