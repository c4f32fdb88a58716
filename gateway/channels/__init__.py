"""Channel drivers and the per-tenant channel registry."""

from __future__ import annotations

from .base import ChannelCredentials, ChannelDriver, ProbeResult
from .email import EmailChannelDriver, PollResult
from .registry import ChannelRegistry
from .telegram import TelegramBotDriver
from .webhook_base import Outcome, WebhookChannelDriver
from .whatsapp import WhatsAppCloudDriver

__all__ = [
    "ChannelCredentials",
    "ChannelDriver",
    "ChannelRegistry",
    "EmailChannelDriver",
    "Outcome",
    "PollResult",
    "ProbeResult",
    "TelegramBotDriver",
    "WebhookChannelDriver",
    "WhatsAppCloudDriver",
]
