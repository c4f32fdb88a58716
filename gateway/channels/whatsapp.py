"""WhatsApp Cloud API channel driver."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from ..conversations.models import ChannelType, NormalizedMessage
from ..errors import ChannelConnectionError, ChannelNotConnected, DecryptionError, DispatchFailure
from .base import ChannelCredentials, ProbeResult
from .schemas import BusinessMessagingChannelConfig
from .webhook_base import Outcome, WebhookChannelDriver

SIGNATURE_HEADER = "X-Hub-Signature-256"


class WhatsAppCloudDriver(WebhookChannelDriver):
    """Business messaging channel with a verification handshake.

    Deliveries are acknowledged by the route before :meth:`handle_delivery`
    runs in the background; replies go out through the phone number's
    ``/messages`` resource and a failed send is only logged.
    """

    channel_type = ChannelType.BUSINESS_MESSAGING
    config_model = BusinessMessagingChannelConfig
    secret_fields = frozenset({"access_token", "verify_token", "app_secret"})

    def __init__(
        self, *, graph_base: str, api_version: str, public_base_url: str, **kwargs: Any
    ) -> None:
        super().__init__(**kwargs)
        self.graph_base = graph_base.rstrip("/")
        self.api_version = api_version
        self.public_base_url = public_base_url.rstrip("/")

    def _url(self, *parts: str) -> str:
        return "/".join([self.graph_base, self.api_version, *parts])

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def webhook_url(self, tenant_id: UUID) -> str:
        return f"{self.public_base_url}/api/webhooks/whatsapp/{tenant_id}"

    # ChannelDriver -----------------------------------------------------------
    def identity(self, endpoint_config: Mapping[str, Any]) -> str | None:
        return endpoint_config.get("display_phone_number") or endpoint_config.get("phone_number_id")

    async def probe(
        self, tenant_id: UUID, endpoint_config: Mapping[str, Any], secrets: Mapping[str, Any]
    ) -> ProbeResult:
        phone_number_id = str(endpoint_config["phone_number_id"])
        resource = await asyncio.to_thread(
            self._request,
            "GET",
            self._url(phone_number_id),
            params={"fields": "display_phone_number,verified_name"},
            headers=self._auth(str(secrets["access_token"])),
            error=ChannelConnectionError,
        )
        if str(resource.get("id", phone_number_id)) != phone_number_id:
            raise ChannelConnectionError("Phone number resource does not match the configured id")
        return ProbeResult(
            endpoint_config={
                "display_phone_number": resource.get("display_phone_number"),
                "verified_name": resource.get("verified_name"),
                "webhook_url": self.webhook_url(tenant_id),
            }
        )

    def _deliver(self, credentials: ChannelCredentials, participant_key: str, text: str) -> str | None:
        phone_number_id = str(credentials.endpoint_config["phone_number_id"])
        body = self._request(
            "POST",
            self._url(phone_number_id, "messages"),
            json={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": participant_key,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
            headers=self._auth(str(credentials.secrets["access_token"])),
            error=DispatchFailure,
        )
        messages = body.get("messages") or []
        return str(messages[0].get("id")) if messages else None

    # Inbound -----------------------------------------------------------------
    def _credentials(self, tenant_id: UUID) -> ChannelCredentials | None:
        try:
            return self._registry.credentials(tenant_id, self.channel_type)
        except ChannelNotConnected:
            return None
        except DecryptionError as exc:
            self.logger.error("Business messaging credentials for %s need re-entry: %s", tenant_id, exc)
            return None

    def verify(self, tenant_id: UUID, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Return the challenge to echo, or ``None`` when the handshake must fail."""

        if mode != "subscribe" or not token or challenge is None:
            return None
        credentials = self._credentials(tenant_id)
        if credentials is None:
            return None
        expected = str(credentials.secrets.get("verify_token") or "")
        if not expected or not hmac.compare_digest(token, expected):
            self.logger.warning("Verification token mismatch for tenant %s", tenant_id)
            return None
        return challenge

    def verify_signature(self, tenant_id: UUID, body: bytes, signature: str | None) -> bool:
        """Check ``X-Hub-Signature-256`` when an app secret is stored."""

        credentials = self._credentials(tenant_id)
        if credentials is None:
            # Nothing will be processed for this tenant anyway.
            return True
        secret = credentials.secrets.get("app_secret")
        if not secret:
            return True
        if not signature:
            return False
        digest = hmac.new(str(secret).encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature, f"sha256={digest}")

    def parse_delivery(self, tenant_id: UUID, payload: Mapping[str, Any]) -> Iterable[NormalizedMessage]:
        """Yield text messages from ``entry[].changes[].value.messages[]``."""

        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                contacts = {c.get("wa_id"): c for c in value.get("contacts") or []}
                for message in value.get("messages") or []:
                    if message.get("type") != "text":
                        self.logger.debug("Ignoring %s message %s", message.get("type"), message.get("id"))
                        continue
                    body = (message.get("text") or {}).get("body") or ""
                    sender = str(message.get("from") or "")
                    if not body.strip() or not sender:
                        continue
                    try:
                        sent_at = datetime.fromtimestamp(int(message["timestamp"]), tz=timezone.utc)
                    except (KeyError, TypeError, ValueError):
                        sent_at = datetime.now(timezone.utc)
                    contact = contacts.get(sender) or {}
                    yield NormalizedMessage(
                        tenant_id=tenant_id,
                        channel_type=self.channel_type,
                        participant_key=sender,
                        text=body,
                        channel_ref=message.get("id"),
                        sender_name=(contact.get("profile") or {}).get("name"),
                        metadata={"phone_number_id": (value.get("metadata") or {}).get("phone_number_id")},
                        sent_at=sent_at,
                    )

    def handle_delivery(self, tenant_id: UUID, payload: Mapping[str, Any]) -> list[Outcome]:
        """Process an acknowledged delivery; failures are only logged."""

        credentials = self._credentials(tenant_id)
        if credentials is None:
            self.logger.info("Delivery for tenant %s without an active channel ignored", tenant_id)
            return [Outcome.INACTIVE]
        auto_reply = bool(credentials.endpoint_config.get("auto_reply", True))
        outcomes: list[Outcome] = []
        for message in self.parse_delivery(tenant_id, payload):
            try:
                outcomes.append(self.process_message(credentials, message, auto_reply=auto_reply))
            except Exception:
                self.logger.exception(
                    "Processing message %s for tenant %s failed", message.channel_ref, tenant_id
                )
        return outcomes


__all__ = ["SIGNATURE_HEADER", "WhatsAppCloudDriver"]
