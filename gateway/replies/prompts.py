"""System prompt construction for automated replies."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from langdetect import LangDetectException, detect

logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_EXCERPT_CHARS = 4000


@dataclass(frozen=True)
class TenantProfile:
    """Business context the reply is written on behalf of."""

    tenant_id: str
    business_name: str
    tone: str = "friendly"
    knowledge_base: str | None = None


class PromptBuilder:
    """Resolve tone templates and render the system prompt for a tenant."""

    _DEFAULT_TONES: Mapping[str, str] = {
        "friendly": "Write warmly and conversationally, like a helpful member of the team.",
        "professional": "Write in a clear, courteous and professional register.",
        "concise": "Answer in as few sentences as possible without losing key facts.",
        "enthusiastic": "Write with energy and positivity while staying accurate.",
    }

    def __init__(self, extra_tones: Mapping[str, str] | None = None):
        self._tones: dict[str, str] = dict(self._DEFAULT_TONES)
        if extra_tones:
            self._tones.update({key.lower(): value for key, value in extra_tones.items()})

    def tone_instruction(self, tone: str | None) -> str:
        key = (tone or "friendly").lower()
        return self._tones.get(key, self._tones["friendly"])

    @staticmethod
    def language_instruction(message: str) -> str:
        lang = os.getenv("OPENAI_LANG")
        if not lang:
            try:
                lang = detect(message) if message.strip() else None
            except LangDetectException:
                lang = None
        return f"Reply in {lang}." if lang else "Reply in the same language as the customer."

    def build(self, profile: TenantProfile, message: str, channel: str) -> str:
        """Return the system prompt for answering ``message`` on ``channel``."""

        parts = [
            f"You are the customer support assistant for {profile.business_name}.",
            f"You are answering a customer over {channel.replace('_', ' ')}.",
            self.tone_instruction(profile.tone),
            "Only state facts found in the knowledge base; offer to follow up when unsure.",
        ]
        if profile.knowledge_base:
            excerpt = profile.knowledge_base.strip()[:KNOWLEDGE_BASE_EXCERPT_CHARS]
            parts.append(f"Knowledge base:\n{excerpt}")
        parts.append(self.language_instruction(message))
        return "\n".join(parts)


__all__ = ["PromptBuilder", "TenantProfile"]
