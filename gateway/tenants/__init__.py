"""Tenant accounts and business profiles."""

from .service import EmailAlreadyRegistered, TenantService

__all__ = ["EmailAlreadyRegistered", "TenantService"]
