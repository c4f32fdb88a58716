"""Declarative route tables consulted by the tenant ownership guard.

Two tables drive the guard:

- ``PUBLIC_ROUTES`` lists the (method, path template) pairs that bypass
  session authentication entirely. Webhook callbacks are here because they
  are authenticated by provider secrets instead of session tokens.
- ``TENANT_ROUTES`` lists the (method, path template, parameter name)
  entries whose path embeds the tenant being targeted.

Any route missing from ``PUBLIC_ROUTES`` requires a valid session token, so a
newly added endpoint is tenant-scoped unless it is explicitly listed here.
The last tenant entry covers the whole ``/api/tenants/{tenant_id}`` namespace,
so new endpoints below it are ownership-checked without a table change.
Templates use ``{name}`` placeholders matching a single path segment.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "BODY_TENANT_FIELD",
    "PUBLIC_ROUTES",
    "PublicRoute",
    "TENANT_ROUTES",
    "TenantRoute",
    "is_public_route",
    "resolve_target_tenant",
]

BODY_TENANT_FIELD = "tenant_id"

_PLACEHOLDER = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


def _compile(template: str, *, prefix: bool = False) -> re.Pattern[str]:
    pattern = ""
    position = 0
    for match in _PLACEHOLDER.finditer(template):
        pattern += re.escape(template[position : match.start()])
        pattern += f"(?P<{match.group(1)}>[^/]+)"
        position = match.end()
    pattern += re.escape(template[position:])
    tail = "(?:/.*)?" if prefix else "/?"
    return re.compile(f"^{pattern}{tail}$")


def _method_matches(expected: str, method: str) -> bool:
    return expected == "*" or expected == method.upper()


@dataclass(frozen=True)
class PublicRoute:
    method: str
    template: str
    _pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_pattern", _compile(self.template))

    def matches(self, method: str, path: str) -> bool:
        return _method_matches(self.method, method) and bool(self._pattern.match(path))


@dataclass(frozen=True)
class TenantRoute:
    """Path template naming the target tenant.

    With ``prefix=True`` the template also matches every path below it.
    """

    method: str
    template: str
    param: str = "tenant_id"
    prefix: bool = False
    _pattern: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_pattern", _compile(self.template, prefix=self.prefix))
        if f"{{{self.param}}}" not in self.template:
            raise ValueError(f"Template {self.template!r} does not embed {{{self.param}}}")

    def extract(self, method: str, path: str) -> str | None:
        if not _method_matches(self.method, method):
            return None
        match = self._pattern.match(path)
        if not match:
            return None
        return match.group(self.param)


PUBLIC_ROUTES: tuple[PublicRoute, ...] = (
    PublicRoute("GET", "/api/health"),
    PublicRoute("GET", "/api/version"),
    PublicRoute("GET", "/api/metrics"),
    PublicRoute("POST", "/api/tenant/accounts/register"),
    PublicRoute("POST", "/api/tenant/accounts/login"),
    PublicRoute("POST", "/api/webhooks/telegram/{tenant_id}"),
    PublicRoute("GET", "/api/webhooks/whatsapp/{tenant_id}"),
    PublicRoute("POST", "/api/webhooks/whatsapp/{tenant_id}"),
)

TENANT_ROUTES: tuple[TenantRoute, ...] = (
    TenantRoute("*", "/api/tenants/{tenant_id}/channels"),
    TenantRoute("*", "/api/tenants/{tenant_id}/channels/{channel_type}"),
    TenantRoute("POST", "/api/tenants/{tenant_id}/channels/email/poll"),
    TenantRoute("GET", "/api/tenants/{tenant_id}/conversations"),
    TenantRoute("GET", "/api/tenants/{tenant_id}/conversations/{conversation_id}"),
    TenantRoute("POST", "/api/tenants/{tenant_id}/conversations/{conversation_id}/messages"),
    # Anything else under a tenant's namespace is owned by that tenant.
    TenantRoute("*", "/api/tenants/{tenant_id}", prefix=True),
)


def is_public_route(
    method: str, path: str, routes: Iterable[PublicRoute] = PUBLIC_ROUTES
) -> bool:
    """Return ``True`` when ``method``/``path`` is allowlisted as public."""

    return any(route.matches(method, path) for route in routes)


def resolve_target_tenant(
    method: str,
    path: str,
    body: Mapping[str, Any] | None = None,
    routes: Iterable[TenantRoute] = TENANT_ROUTES,
) -> str | None:
    """Return the tenant id a request targets, or ``None`` when it names none.

    The path table wins over the body; a body is only consulted for its
    top-level ``tenant_id`` field.
    """

    for route in routes:
        tenant_id = route.extract(method, path)
        if tenant_id is not None:
            return tenant_id
    if body:
        candidate = body.get(BODY_TENANT_FIELD)
        if candidate not in (None, ""):
            return str(candidate)
    return None
