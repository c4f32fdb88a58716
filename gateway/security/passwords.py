"""Password hashing for tenant accounts backed by Passlib (Argon2)."""

from __future__ import annotations

from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    """Return an Argon2 hash for ``password``."""

    if not password:
        raise ValueError("Password must be non-empty.")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed_password: str | None) -> bool:
    """Validate ``password`` against the stored hash of a tenant account."""

    if not password or not hashed_password:
        return False
    return _pwd_context.verify(password, hashed_password)


__all__ = ["hash_password", "verify_password"]
