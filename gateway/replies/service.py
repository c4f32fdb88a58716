"""Reasoning service client used by every channel driver."""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from typing import Any, Protocol

from openai import OpenAI

from ..conversations.schemas import ConversationMessage
from ..errors import ReplyGenerationFailure
from .prompts import PromptBuilder, TenantProfile

logger = logging.getLogger(__name__)


class ReplyGenerator(Protocol):
    """Produce reply text for a customer message or raise ``ReplyGenerationFailure``."""

    def generate(
        self,
        profile: TenantProfile,
        message: str,
        history: Sequence[ConversationMessage] = (),
        *,
        channel: str = "email",
    ) -> str: ...


class OpenAIReplyGenerator:
    """Chat-completions backed :class:`ReplyGenerator`.

    The client is created lazily from ``OPENAI_API_KEY`` unless one is
    injected. Any transport, quota or configuration problem is reported as
    :class:`ReplyGenerationFailure` so callers can degrade to a no-reply
    outcome.
    """

    def __init__(
        self,
        *,
        client: Any | None = None,
        model: str = "gpt-4o-mini",
        prompt_builder: PromptBuilder | None = None,
        temperature: float = 0.7,
        max_tokens: int = 600,
    ) -> None:
        self._client = client
        self.model = model
        self._prompts = prompt_builder or PromptBuilder()
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _get_client(self) -> Any:
        if self._client is None:
            if not os.getenv("OPENAI_API_KEY"):
                raise ReplyGenerationFailure("OPENAI_API_KEY is not configured")
            self._client = OpenAI()
        return self._client

    def _messages(
        self,
        profile: TenantProfile,
        message: str,
        history: Sequence[ConversationMessage],
        channel: str,
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self._prompts.build(profile, message, channel)}]
        for turn in history:
            role = "assistant" if turn.role == "agent" else "user"
            messages.append({"role": role, "content": turn.content})
        messages.append({"role": "user", "content": message})
        return messages

    def generate(
        self,
        profile: TenantProfile,
        message: str,
        history: Sequence[ConversationMessage] = (),
        *,
        channel: str = "email",
    ) -> str:
        client = self._get_client()
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=self._messages(profile, message, history, channel),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            content = completion.choices[0].message.content
        except Exception as exc:
            logger.warning("Reply generation failed for tenant %s: %s", profile.tenant_id, exc)
            raise ReplyGenerationFailure(str(exc)) from exc
        if not content or not content.strip():
            raise ReplyGenerationFailure("Reasoning service returned an empty reply")
        return content.strip()


__all__ = ["OpenAIReplyGenerator", "ReplyGenerator"]
