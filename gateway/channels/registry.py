"""Per-tenant channel connection records.

The registry owns the ``tenant_channels`` table. It is the only component
that touches the credential vault: writes encrypt the secret bundle, and
:meth:`ChannelRegistry.credentials` is the single read path that decrypts
it. Every public read returns :class:`TenantChannelStatus`, which has no
field able to carry a secret.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..conversations.models import ChannelType
from ..errors import ChannelNotConnected, DecryptionError
from ..models import TenantChannel
from ..models.session import session_scope
from ..security.vault import CredentialVault
from .base import ChannelCredentials, ChannelDriver
from .schemas import TenantChannelStatus

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Connect, disconnect and inspect tenant channels."""

    def __init__(self, session_factory: sessionmaker[Session], vault: CredentialVault) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._drivers: dict[ChannelType, ChannelDriver] = {}

    # Drivers -----------------------------------------------------------------
    def register_driver(self, driver: ChannelDriver) -> None:
        self._drivers[driver.channel_type] = driver

    def get_driver(self, channel_type: ChannelType | str) -> ChannelDriver:
        """Return the driver for ``channel_type`` or raise ``KeyError``."""

        try:
            return self._drivers[ChannelType(channel_type)]
        except ValueError as exc:
            raise KeyError(f"Channel '{channel_type}' is not supported") from exc
        except KeyError as exc:
            raise KeyError(f"Channel '{channel_type}' is not configured") from exc

    # Helpers -----------------------------------------------------------------
    @staticmethod
    def _select(session: Session, tenant_id: UUID, channel_type: ChannelType) -> TenantChannel | None:
        return session.scalars(
            select(TenantChannel).where(
                TenantChannel.tenant_id == tenant_id,
                TenantChannel.channel_type == channel_type.value,
            )
        ).first()

    def _to_status(self, channel_type: ChannelType, row: TenantChannel | None) -> TenantChannelStatus:
        if row is None:
            return TenantChannelStatus(channel_type=channel_type.value, connected=False)
        driver = self._drivers.get(channel_type)
        endpoint = dict(row.endpoint_config or {})
        return TenantChannelStatus(
            channel_type=channel_type.value,
            connected=row.is_active,
            identity=driver.identity(endpoint) if driver else None,
            last_activity_at=row.last_activity_at,
            endpoint=endpoint,
        )

    # Lifecycle ---------------------------------------------------------------
    async def connect(
        self, tenant_id: UUID, channel_type: ChannelType | str, config: Mapping[str, Any]
    ) -> TenantChannelStatus:
        """Validate, probe and persist a channel connection.

        Nothing is written unless the probe succeeds, so an operationally
        invalid credential is never stored as active.

        Raises:
            pydantic.ValidationError: If ``config`` is malformed.
            ChannelConnectionError: If the probe fails.
        """

        driver = self.get_driver(channel_type)
        kind = driver.channel_type
        validated = driver.config_model.model_validate(dict(config))
        endpoint, secrets = driver.split_config(validated)
        probe = await driver.probe(tenant_id, endpoint, secrets)
        endpoint.update(probe.endpoint_config)
        secrets.update(probe.secrets)
        encrypted = self._vault.encrypt_json(secrets)

        with session_scope(self._session_factory) as session:
            row = self._select(session, tenant_id, kind)
            if row is None:
                row = TenantChannel(tenant_id=tenant_id, channel_type=kind.value)
                session.add(row)
            row.endpoint_config = endpoint
            row.encrypted_secret = encrypted
            row.is_active = True
            session.flush()
            status = self._to_status(kind, row)
        logger.info("Connected %s channel for tenant %s", kind.value, tenant_id)
        return status

    async def disconnect(
        self, tenant_id: UUID, channel_type: ChannelType | str
    ) -> TenantChannelStatus:
        """Deactivate a channel; bot channels also drop their webhook.

        A failed deregistration is logged and does not block deactivation,
        and neither do credentials the current master key cannot read.
        """

        driver = self.get_driver(channel_type)
        kind = driver.channel_type
        try:
            credentials = self.credentials(tenant_id, kind)
        except ChannelNotConnected:
            return self.status(tenant_id, kind)
        except DecryptionError as exc:
            logger.warning(
                "Skipping deregistration of %s channel for tenant %s: %s",
                kind.value,
                tenant_id,
                exc,
            )
            credentials = None
        if credentials is not None:
            try:
                await driver.deregister(credentials)
            except Exception as exc:
                logger.warning(
                    "Failed to deregister %s subscription for tenant %s: %s",
                    kind.value,
                    tenant_id,
                    exc,
                )

        with session_scope(self._session_factory) as session:
            row = self._select(session, tenant_id, kind)
            if row is not None:
                row.is_active = False
            status = self._to_status(kind, row)
        logger.info("Disconnected %s channel for tenant %s", kind.value, tenant_id)
        return status

    # Reads -------------------------------------------------------------------
    def status(self, tenant_id: UUID, channel_type: ChannelType | str) -> TenantChannelStatus:
        kind = ChannelType(channel_type)
        with session_scope(self._session_factory) as session:
            return self._to_status(kind, self._select(session, tenant_id, kind))

    def list_status(self, tenant_id: UUID) -> list[TenantChannelStatus]:
        with session_scope(self._session_factory) as session:
            rows = {
                row.channel_type: row
                for row in session.scalars(
                    select(TenantChannel).where(TenantChannel.tenant_id == tenant_id)
                )
            }
            return [self._to_status(kind, rows.get(kind.value)) for kind in ChannelType]

    def credentials(
        self, tenant_id: UUID, channel_type: ChannelType | str, *, require_active: bool = True
    ) -> ChannelCredentials:
        """Return decrypted credentials for driver use.

        Raises:
            ChannelNotConnected: If there is no (active) record.
            DecryptionError: If the stored bundle can no longer be decrypted.
        """

        kind = ChannelType(channel_type)
        with session_scope(self._session_factory) as session:
            row = self._select(session, tenant_id, kind)
            if row is None or (require_active and not row.is_active):
                raise ChannelNotConnected(
                    f"Tenant {tenant_id} has no active {kind.value} channel"
                )
            endpoint = dict(row.endpoint_config or {})
            encrypted = row.encrypted_secret
            is_active = row.is_active
        secrets = self._vault.decrypt_json(encrypted)
        return ChannelCredentials(
            tenant_id=tenant_id,
            channel_type=kind,
            endpoint_config=endpoint,
            secrets=secrets,
            is_active=is_active,
        )

    def touch(
        self, tenant_id: UUID, channel_type: ChannelType | str, when: datetime | None = None
    ) -> None:
        kind = ChannelType(channel_type)
        with session_scope(self._session_factory) as session:
            row = self._select(session, tenant_id, kind)
            if row is not None:
                row.last_activity_at = when or datetime.now(timezone.utc)

    def active_channels(self, channel_type: ChannelType | str) -> list[UUID]:
        """Return tenant ids with an active channel of ``channel_type``."""

        kind = ChannelType(channel_type)
        with session_scope(self._session_factory) as session:
            return list(
                session.scalars(
                    select(TenantChannel.tenant_id)
                    .where(
                        TenantChannel.channel_type == kind.value,
                        TenantChannel.is_active.is_(True),
                    )
                    .order_by(TenantChannel.created_at)
                )
            )


__all__ = ["ChannelRegistry"]
