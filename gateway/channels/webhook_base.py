"""Shared plumbing for push (webhook) channel drivers."""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any
from uuid import UUID

import requests

from ..conversations.dedup import ProcessedMessageStore
from ..conversations.models import NormalizedMessage
from ..conversations.service import ConversationService
from ..errors import DispatchFailure, DuplicateMessage, ReplyGenerationFailure
from ..replies.prompts import TenantProfile
from ..replies.service import ReplyGenerator
from .base import ChannelCredentials, ChannelDriver
from .registry import ChannelRegistry


class Outcome(str, Enum):
    """What happened to one inbound webhook message."""

    REPLIED = "replied"
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    NON_TEXT = "non_text"
    SELF_AUTHORED = "self_authored"
    INACTIVE = "inactive"
    REJECTED = "rejected"
    REPLY_FAILED = "reply_failed"
    DISPATCH_FAILED = "dispatch_failed"


class WebhookChannelDriver(ChannelDriver):
    """Base class for drivers fed by provider HTTP callbacks.

    Handling is synchronous (it runs in a worker thread), while the async
    :class:`ChannelDriver` hooks wrap the blocking calls with
    :func:`asyncio.to_thread`.
    """

    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        conversations: ConversationService,
        processed: ProcessedMessageStore,
        replies: ReplyGenerator,
        profiles: Callable[[UUID], TenantProfile],
        session: requests.Session | None = None,
        timeout: float = 15.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry
        self._conversations = conversations
        self._processed = processed
        self._replies = replies
        self._profiles = profiles
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(type(self).__module__)

    def _request(
        self,
        method: str,
        url: str,
        *,
        error: type[Exception],
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Call a provider endpoint and return its JSON body.

        Transport failures and non-2xx statuses are raised as ``error``; a
        body that is not a JSON object yields an empty dict.
        """

        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise error(f"{method} {self._redact(url)} failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if not 200 <= response.status_code < 300:
            detail = body.get("description") or body.get("error") or response.status_code
            raise error(f"{method} {self._redact(url)} returned {response.status_code}: {detail}")
        return body

    @staticmethod
    def _redact(url: str) -> str:
        return url

    @abstractmethod
    def _deliver(self, credentials: ChannelCredentials, participant_key: str, text: str) -> str | None:
        """Send ``text`` through the provider; raise ``DispatchFailure`` on error."""

    async def send_text(
        self,
        tenant_id: UUID,
        participant_key: str,
        text: str,
        thread: Mapping[str, Any] | None = None,
    ) -> str | None:
        credentials = await asyncio.to_thread(
            self._registry.credentials, tenant_id, self.channel_type
        )
        reference = await asyncio.to_thread(self._deliver, credentials, participant_key, text)
        await asyncio.to_thread(self._registry.touch, tenant_id, self.channel_type)
        return reference

    def process_message(
        self,
        credentials: ChannelCredentials,
        message: NormalizedMessage,
        *,
        auto_reply: bool = True,
    ) -> Outcome:
        """De-duplicate, thread, record and optionally answer one message."""

        tenant_id = message.tenant_id
        if message.channel_ref:
            try:
                self._processed.claim(tenant_id, self.channel_type.value, message.channel_ref)
            except DuplicateMessage:
                self.logger.debug("Ignoring duplicate delivery %s", message.channel_ref)
                return Outcome.DUPLICATE

        conversation = self._conversations.thread(message)
        history = self._conversations.history(tenant_id, conversation.id)
        self._conversations.record_inbound(conversation, message)
        self._registry.touch(tenant_id, self.channel_type)
        if not auto_reply:
            return Outcome.RECORDED

        try:
            reply = self._replies.generate(
                self._profiles(tenant_id),
                message.text,
                history,
                channel=self.channel_type.value,
            )
        except ReplyGenerationFailure as exc:
            self.logger.warning("No reply for tenant %s: %s", tenant_id, exc)
            return Outcome.REPLY_FAILED

        try:
            reference = self._deliver(credentials, message.participant_key, reply)
        except DispatchFailure as exc:
            self.logger.error(
                "Sending reply to %s for tenant %s failed: %s",
                message.participant_key,
                tenant_id,
                exc,
            )
            return Outcome.DISPATCH_FAILED

        self._conversations.record_outbound(
            tenant_id, conversation.id, reply, channel_ref=reference
        )
        return Outcome.REPLIED


__all__ = ["Outcome", "WebhookChannelDriver"]
