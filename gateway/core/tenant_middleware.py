"""Middleware enforcing tenant ownership on every non-public request."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..errors import AccessDenied
from .auth import (
    TenantTokenConfigurationError,
    TenantTokenValidationError,
    decode_tenant_token,
    extract_bearer_token,
)
from .routes import is_public_route, resolve_target_tenant
from .tenant_context import reset_tenant_context, set_tenant_context

__all__ = ["TenantOwnershipMiddleware"]

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _check_ownership(authenticated: str, target: str | None) -> None:
    if target is not None and target != authenticated:
        raise AccessDenied(f"Tenant {authenticated} may not act on tenant {target}")


class TenantOwnershipMiddleware(BaseHTTPMiddleware):
    """Authenticate the caller and reject cross-tenant access.

    For tenant-scoped requests the target tenant is resolved from the route
    table (path) or the JSON body. A mismatch with the authenticated tenant
    is answered with 403 before the handler runs. When the request names no
    tenant, the authenticated one becomes the implicit target.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        method = request.method.upper()
        path = request.url.path
        if method == "OPTIONS" or is_public_route(method, path):
            return await call_next(request)

        try:
            token = extract_bearer_token(request.headers.get("Authorization"))
            payload = decode_tenant_token(token)
        except TenantTokenValidationError as exc:
            return _unauthorized(str(exc))
        except TenantTokenConfigurationError as exc:
            logger.error("Tenant token configuration error: %s", exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Authentication is not configured."},
            )

        authenticated = str(payload["tenant_id"])
        body = await self._json_body(request)
        target = resolve_target_tenant(method, path, body)
        try:
            _check_ownership(authenticated, target)
        except AccessDenied as exc:
            logger.warning("%s (%s %s)", exc, method, path)
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"detail": "Access denied for the requested tenant."},
            )

        request.state.tenant_id = authenticated
        request.state.user_id = str(payload["user_id"])
        request.state.target_tenant_id = target or authenticated

        context_token = set_tenant_context(authenticated, request.state.user_id)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(context_token)

    @staticmethod
    async def _json_body(request: Request) -> dict[str, Any] | None:
        if request.method.upper() in {"GET", "HEAD", "DELETE"}:
            return None
        content_type = request.headers.get("content-type", "")
        if "json" not in content_type:
            return None
        raw = await request.body()
        if not raw:
            return None
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return decoded if isinstance(decoded, dict) else None
