"""Runtime configuration for the gateway.

All settings come from environment variables (optionally loaded from a
``.env`` file by :mod:`gateway.main`). ``get_settings`` caches the parsed
values; tests that change the environment call ``reset_settings_cache``.
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

DEFAULT_AUTOMATED_SENDER_PREFIXES: tuple[str, ...] = (
    "no-reply",
    "noreply",
    "do-not-reply",
    "donotreply",
    "mailer-daemon",
    "postmaster",
    "bounce",
    "bounces",
    "notifications",
    "notification",
    "newsletter",
    "news",
    "alerts",
    "digest",
)

DEFAULT_AUTOMATED_SENDER_DOMAINS: tuple[str, ...] = (
    "mailchimp.com",
    "mcsv.net",
    "sendgrid.net",
    "amazonses.com",
    "mailgun.org",
    "hubspotemail.net",
    "facebookmail.com",
    "linkedin.com",
)

DEFAULT_AUTOMATED_SUBJECT_PHRASES: tuple[str, ...] = (
    "newsletter",
    "unsubscribe",
    "out of office",
    "automatic reply",
    "auto-reply",
    "autoreply",
    "delivery status notification",
    "undeliverable",
    "mail delivery failed",
    "verify your email",
    "password reset",
)


def _get_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclasses.dataclass(frozen=True)
class EmailFilterSettings:
    """Heuristics used to skip automated or stale inbound email."""

    sender_prefixes: tuple[str, ...] = DEFAULT_AUTOMATED_SENDER_PREFIXES
    sender_domains: tuple[str, ...] = DEFAULT_AUTOMATED_SENDER_DOMAINS
    subject_phrases: tuple[str, ...] = DEFAULT_AUTOMATED_SUBJECT_PHRASES
    stale_reply_markers: int = 4


@dataclasses.dataclass(frozen=True)
class SharedSenderSettings:
    """Platform-owned SMTP identity used by tenants without their own server."""

    host: str | None = None
    port: int = 587
    username: str | None = None
    password: str | None = None
    from_address: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)


@dataclasses.dataclass(frozen=True)
class GatewaySettings:
    """Process-wide settings resolved from the environment."""

    database_url: str | None = None
    vault_key: str | None = None
    public_base_url: str = "http://localhost:8000"
    shared_sender: SharedSenderSettings = dataclasses.field(
        default_factory=SharedSenderSettings
    )
    daily_send_limit: int = 50
    email_max_per_cycle: int = 10
    email_cycle_timeout_seconds: int = 120
    processed_ids_capacity: int = 5000
    email_filters: EmailFilterSettings = dataclasses.field(
        default_factory=EmailFilterSettings
    )
    telegram_api_base: str = "https://api.telegram.org"
    whatsapp_graph_base: str = "https://graph.facebook.com"
    whatsapp_api_version: str = "v19.0"
    http_timeout_seconds: float = 15.0
    openai_model: str = "gpt-4o-mini"


@lru_cache(maxsize=1)
def get_settings() -> GatewaySettings:
    """Load settings from the environment with development defaults."""

    shared_sender = SharedSenderSettings(
        host=os.getenv("SHARED_SMTP_HOST"),
        port=_get_int("SHARED_SMTP_PORT", 587),
        username=os.getenv("SHARED_SMTP_USER"),
        password=os.getenv("SHARED_SMTP_PASSWORD"),
        from_address=os.getenv("SHARED_SMTP_FROM") or os.getenv("SHARED_SMTP_USER"),
    )
    filters = EmailFilterSettings(
        sender_prefixes=_get_list(
            "AUTOMATED_SENDER_PREFIXES", DEFAULT_AUTOMATED_SENDER_PREFIXES
        ),
        sender_domains=_get_list(
            "AUTOMATED_SENDER_DOMAINS", DEFAULT_AUTOMATED_SENDER_DOMAINS
        ),
        subject_phrases=_get_list(
            "AUTOMATED_SUBJECT_PHRASES", DEFAULT_AUTOMATED_SUBJECT_PHRASES
        ),
        stale_reply_markers=_get_int("STALE_THREAD_REPLY_MARKERS", 4),
    )
    return GatewaySettings(
        database_url=os.getenv("DATABASE_URL"),
        vault_key=os.getenv("CREDENTIAL_VAULT_KEY"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
        shared_sender=shared_sender,
        daily_send_limit=_get_int("OUTBOUND_DAILY_LIMIT", 50),
        email_max_per_cycle=_get_int("EMAIL_MAX_PER_CYCLE", 10),
        email_cycle_timeout_seconds=_get_int("EMAIL_CYCLE_TIMEOUT_SECONDS", 120),
        processed_ids_capacity=_get_int("PROCESSED_IDS_CAPACITY", 5000),
        email_filters=filters,
        telegram_api_base=os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/"),
        whatsapp_graph_base=os.getenv(
            "WHATSAPP_GRAPH_BASE", "https://graph.facebook.com"
        ).rstrip("/"),
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v19.0"),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = [
    "EmailFilterSettings",
    "GatewaySettings",
    "SharedSenderSettings",
    "get_settings",
    "reset_settings_cache",
]
