"""Security utilities exposed for convenience."""

from .passwords import hash_password, verify_password
from .tokens import (
    JWTSettings,
    create_access_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
)
from .vault import CredentialVault

__all__ = [
    "CredentialVault",
    "JWTSettings",
    "create_access_token",
    "get_jwt_settings",
    "hash_password",
    "reset_jwt_settings_cache",
    "verify_password",
]
