"""Session token validation for tenant-scoped requests."""

from __future__ import annotations

from typing import TypedDict, cast

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from ..security.tokens import get_jwt_settings

__all__ = [
    "TenantTokenConfigurationError",
    "TenantTokenPayload",
    "TenantTokenValidationError",
    "decode_tenant_token",
    "extract_bearer_token",
]


class TenantTokenConfigurationError(RuntimeError):
    """Raised when tenant token configuration is invalid."""


class TenantTokenValidationError(ValueError):
    """Raised when the provided tenant token cannot be validated."""


class _TenantTokenRequiredClaims(TypedDict):
    tenant_id: str
    user_id: str


class TenantTokenPayload(_TenantTokenRequiredClaims, total=False):
    """Decoded JWT payload for tenant-scoped authentication."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    scope: str
    type: str


def extract_bearer_token(authorization: str | None) -> str:
    """Return the credentials part of a ``Bearer`` authorization header.

    Raises:
        TenantTokenValidationError: If the header is missing or uses another scheme.
    """

    if not authorization:
        raise TenantTokenValidationError("Missing Authorization header.")
    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise TenantTokenValidationError("Authorization header must use Bearer scheme.")
    return credentials.strip()


def decode_tenant_token(token: str) -> TenantTokenPayload:
    """Decode and validate a tenant access token.

    Args:
        token: Encoded JWT token string from the ``Authorization`` header.

    Returns:
        TenantTokenPayload: Parsed payload containing tenant and user identifiers.

    Raises:
        TenantTokenConfigurationError: If mandatory environment configuration is missing.
        TenantTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    try:
        settings = get_jwt_settings()
    except RuntimeError as exc:
        raise TenantTokenConfigurationError(str(exc)) from exc

    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TenantTokenValidationError("Tenant token has expired.") from exc
    except InvalidTokenError as exc:
        raise TenantTokenValidationError("Tenant token is invalid.") from exc

    if "tenant_id" not in payload or "user_id" not in payload:
        raise TenantTokenValidationError(
            "Tenant token payload must include 'tenant_id' and 'user_id'.",
        )
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise TenantTokenValidationError("Tenant token must be an access token.")

    return cast(TenantTokenPayload, payload)
