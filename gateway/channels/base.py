"""Base abstractions for channel drivers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel

from ..conversations.models import ChannelType


@dataclass(frozen=True)
class ChannelCredentials:
    """Decrypted view of a connection record, handed to drivers only."""

    tenant_id: UUID
    channel_type: ChannelType
    endpoint_config: Mapping[str, Any]
    secrets: Mapping[str, Any]
    is_active: bool = True


@dataclass
class ProbeResult:
    """Values learned or generated while probing a transport."""

    endpoint_config: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, Any] = field(default_factory=dict)


class ChannelDriver(ABC):
    """Transport-specific behaviour behind the channel registry."""

    channel_type: ClassVar[ChannelType]
    #: Pydantic model validating the connect payload.
    config_model: ClassVar[type[BaseModel]]
    #: Config fields stored encrypted instead of in ``endpoint_config``.
    secret_fields: ClassVar[frozenset[str]] = frozenset()

    def split_config(self, config: BaseModel) -> tuple[dict[str, Any], dict[str, Any]]:
        """Separate validated config into ``(endpoint_config, secrets)``."""

        data = config.model_dump()
        secrets = {key: value for key, value in data.items() if key in self.secret_fields and value}
        endpoint = {key: value for key, value in data.items() if key not in self.secret_fields}
        return endpoint, secrets

    @abstractmethod
    async def probe(
        self, tenant_id: UUID, endpoint_config: Mapping[str, Any], secrets: Mapping[str, Any]
    ) -> ProbeResult:
        """Open and close a real connection with the supplied credentials.

        Raises:
            ChannelConnectionError: If the transport rejects the credentials.
        """

    async def deregister(self, credentials: ChannelCredentials) -> None:
        """Remove any server-side subscription. No-op for pull channels."""

        return None

    def identity(self, endpoint_config: Mapping[str, Any]) -> str | None:
        return None

    @abstractmethod
    async def send_text(
        self,
        tenant_id: UUID,
        participant_key: str,
        text: str,
        thread: Mapping[str, Any] | None = None,
    ) -> str | None:
        """Send an agent message outside an inbound cycle.

        ``thread`` carries the metadata of the customer's last message so the
        reply can be threaded. Returns the provider reference of the sent
        message when one is available.
        """


__all__ = ["ChannelCredentials", "ChannelDriver", "ProbeResult"]
