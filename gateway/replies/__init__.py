"""Automated reply generation."""

from .prompts import PromptBuilder, TenantProfile
from .service import OpenAIReplyGenerator, ReplyGenerator

__all__ = ["OpenAIReplyGenerator", "PromptBuilder", "ReplyGenerator", "TenantProfile"]
