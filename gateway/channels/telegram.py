"""Telegram bot channel driver."""
from __future__ import annotations

import asyncio
import hmac
import re
import secrets as token_generator
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import UUID

from ..conversations.models import ChannelType, NormalizedMessage
from ..errors import ChannelConnectionError, ChannelNotConnected, DecryptionError, DispatchFailure
from .base import ChannelCredentials, ProbeResult
from .schemas import BotChannelConfig
from .webhook_base import Outcome, WebhookChannelDriver

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
ALLOWED_UPDATES = ["message", "edited_message", "callback_query"]
MAX_MESSAGE_LENGTH = 4096

_TOKEN_IN_URL = re.compile(r"/bot[^/]+/")


class TelegramBotDriver(WebhookChannelDriver):
    """Bot API channel: push updates in, ``sendMessage`` out."""

    channel_type = ChannelType.BOT
    config_model = BotChannelConfig
    secret_fields = frozenset({"bot_token"})

    def __init__(self, *, api_base: str, public_base_url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_base = api_base.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")

    # Provider calls ----------------------------------------------------------
    @staticmethod
    def _redact(url: str) -> str:
        return _TOKEN_IN_URL.sub("/bot***/", url)

    def _call(
        self,
        token: str,
        method: str,
        payload: Mapping[str, Any] | None = None,
        *,
        error: type[Exception] = ChannelConnectionError,
    ) -> Any:
        body = self._request(
            "POST", f"{self.api_base}/bot{token}/{method}", json=dict(payload or {}), error=error
        )
        if not body.get("ok"):
            raise error(f"Telegram {method} failed: {body.get('description', 'unknown error')}")
        return body.get("result")

    def webhook_url(self, tenant_id: UUID) -> str:
        return f"{self.public_base_url}/api/webhooks/telegram/{tenant_id}"

    # ChannelDriver -----------------------------------------------------------
    def identity(self, endpoint_config: Mapping[str, Any]) -> str | None:
        username = endpoint_config.get("bot_username")
        return f"@{username}" if username else None

    async def probe(
        self, tenant_id: UUID, endpoint_config: Mapping[str, Any], secrets: Mapping[str, Any]
    ) -> ProbeResult:
        token = str(secrets["bot_token"])
        me = await asyncio.to_thread(self._call, token, "getMe")
        if not isinstance(me, dict) or not me.get("is_bot", True):
            raise ChannelConnectionError("Token does not belong to a bot account")
        webhook_secret = token_generator.token_urlsafe(32)
        url = self.webhook_url(tenant_id)
        await asyncio.to_thread(
            self._call,
            token,
            "setWebhook",
            {"url": url, "secret_token": webhook_secret, "allowed_updates": ALLOWED_UPDATES},
        )
        self.logger.info("Registered Telegram webhook for tenant %s as @%s", tenant_id, me.get("username"))
        return ProbeResult(
            endpoint_config={
                "bot_id": me.get("id"),
                "bot_username": me.get("username"),
                "webhook_url": url,
            },
            secrets={"webhook_secret": webhook_secret},
        )

    async def deregister(self, credentials: ChannelCredentials) -> None:
        await asyncio.to_thread(
            self._call, str(credentials.secrets["bot_token"]), "deleteWebhook"
        )

    def _deliver(self, credentials: ChannelCredentials, participant_key: str, text: str) -> str | None:
        token = str(credentials.secrets["bot_token"])
        reference = None
        for start in range(0, len(text), MAX_MESSAGE_LENGTH):
            result = self._call(
                token,
                "sendMessage",
                {"chat_id": participant_key, "text": text[start : start + MAX_MESSAGE_LENGTH]},
                error=DispatchFailure,
            )
            if isinstance(result, dict) and result.get("message_id") is not None:
                reference = str(result["message_id"])
        return reference

    # Inbound -----------------------------------------------------------------
    @staticmethod
    def _extract(update: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any], str, int | None] | None:
        """Return ``(chat, sender, text, date)`` for supported update kinds."""

        message = update.get("message") or update.get("edited_message")
        if message:
            return (
                message.get("chat") or {},
                message.get("from") or {},
                message.get("text") or "",
                message.get("edit_date") or message.get("date"),
            )
        callback = update.get("callback_query")
        if callback:
            source = callback.get("message") or {}
            return (
                source.get("chat") or {},
                callback.get("from") or {},
                callback.get("data") or "",
                source.get("date"),
            )
        return None

    @staticmethod
    def _display_name(user: Mapping[str, Any]) -> str | None:
        name = user.get("username") or " ".join(
            filter(None, [user.get("first_name"), user.get("last_name")])
        ).strip()
        return name or None

    def handle_update(
        self, tenant_id: UUID, update: Mapping[str, Any], secret_token: str | None
    ) -> Outcome:
        """Process one pushed update synchronously.

        Never raises for provider-caused conditions; the caller always answers
        the provider with success.
        """

        try:
            credentials = self._registry.credentials(
                tenant_id, self.channel_type, require_active=False
            )
        except ChannelNotConnected:
            self.logger.info("Update for tenant %s without a bot channel ignored", tenant_id)
            return Outcome.INACTIVE
        except DecryptionError as exc:
            self.logger.error("Bot credentials for tenant %s need re-entry: %s", tenant_id, exc)
            return Outcome.REJECTED
        if not credentials.is_active:
            return Outcome.INACTIVE

        expected = str(credentials.secrets.get("webhook_secret") or "")
        if not expected or not hmac.compare_digest(secret_token or "", expected):
            self.logger.warning("Rejected Telegram update with bad secret for tenant %s", tenant_id)
            return Outcome.REJECTED

        extracted = self._extract(update)
        if extracted is None:
            return Outcome.NON_TEXT
        chat, sender, text, timestamp = extracted
        if not text.strip() or chat.get("id") is None:
            return Outcome.NON_TEXT
        bot_id = credentials.endpoint_config.get("bot_id")
        if sender.get("is_bot") or (bot_id is not None and sender.get("id") == bot_id):
            return Outcome.SELF_AUTHORED

        update_id = update.get("update_id")
        sent_at = (
            datetime.fromtimestamp(timestamp, tz=timezone.utc)
            if timestamp
            else datetime.now(timezone.utc)
        )
        message = NormalizedMessage(
            tenant_id=tenant_id,
            channel_type=self.channel_type,
            participant_key=str(chat["id"]),
            text=text,
            channel_ref=f"update-{update_id}" if update_id is not None else None,
            sender_name=self._display_name(sender),
            metadata={"chat_type": chat.get("type"), "update_id": update_id},
            sent_at=sent_at,
        )
        return self.process_message(credentials, message)


__all__ = ["SECRET_HEADER", "TelegramBotDriver"]
