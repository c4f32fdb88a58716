"""Tenant account and business profile management."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import GatewayError, TenantNotFound
from ..models import Tenant
from ..models.session import session_scope
from ..replies.prompts import TenantProfile
from ..security.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = ("business_name", "tone", "knowledge_base")


class EmailAlreadyRegistered(GatewayError):
    """Raised when registering an address that already has an account."""


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class TenantService:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def register(
        self, *, name: str, email: str, password: str, business_name: str | None = None
    ) -> Tenant:
        email = _normalize_email(email)
        try:
            with session_scope(self._session_factory) as session:
                existing = session.scalars(select(Tenant).where(Tenant.email == email)).first()
                if existing is not None:
                    raise EmailAlreadyRegistered(f"{email} is already registered")
                tenant = Tenant(
                    name=name,
                    email=email,
                    password_hash=hash_password(password),
                    business_name=business_name or name,
                )
                session.add(tenant)
                session.flush()
        except IntegrityError as exc:
            raise EmailAlreadyRegistered(f"{email} is already registered") from exc
        logger.info("Registered tenant %s", tenant.id)
        return tenant

    def authenticate(self, email: str, password: str) -> Tenant | None:
        with session_scope(self._session_factory) as session:
            tenant = session.scalars(
                select(Tenant).where(Tenant.email == _normalize_email(email))
            ).first()
        if tenant is None or not verify_password(password, tenant.password_hash):
            return None
        return tenant

    def get(self, tenant_id: UUID) -> Tenant:
        with session_scope(self._session_factory) as session:
            tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFound(f"Tenant {tenant_id} not found")
        return tenant

    def update_profile(self, tenant_id: UUID, **changes: str | None) -> Tenant:
        unknown = set(changes) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        with session_scope(self._session_factory) as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise TenantNotFound(f"Tenant {tenant_id} not found")
            for field, value in changes.items():
                setattr(tenant, field, value)
            session.flush()
        return tenant

    def load_profile(self, tenant_id: UUID) -> TenantProfile:
        """Business context handed to the reasoning service."""

        tenant = self.get(tenant_id)
        return TenantProfile(
            tenant_id=str(tenant.id),
            business_name=tenant.business_name or tenant.name,
            tone=tenant.tone or "friendly",
            knowledge_base=tenant.knowledge_base,
        )


__all__ = ["EmailAlreadyRegistered", "TenantService"]
