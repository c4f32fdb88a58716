"""Process-wide wiring of stores, drivers and the reasoning client."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from typing import Any

import requests
from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from .channels import (
    ChannelRegistry,
    EmailChannelDriver,
    TelegramBotDriver,
    WhatsAppCloudDriver,
)
from .channels.email import MailboxFactory, SenderFactory
from .config import GatewaySettings, get_settings
from .conversations import ConversationService, ProcessedMessageStore, SqlConversationRepository
from .models.session import get_sessionmaker, init_db
from .outbound import OutboundQuotaManager, QuotaCounter, SqlQuotaCounter
from .replies import OpenAIReplyGenerator, ReplyGenerator
from .security.vault import CredentialVault
from .tenants import TenantService

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class GatewayServices:
    settings: GatewaySettings
    session_factory: sessionmaker[Session]
    tenants: TenantService
    conversations: ConversationService
    processed: ProcessedMessageStore
    quota: OutboundQuotaManager
    replies: ReplyGenerator
    registry: ChannelRegistry
    email: EmailChannelDriver
    telegram: TelegramBotDriver
    whatsapp: WhatsAppCloudDriver


def build_services(
    settings: GatewaySettings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    replies: ReplyGenerator | None = None,
    quota_counter: QuotaCounter | None = None,
    http_session: requests.Session | None = None,
    mailbox_factory: MailboxFactory | None = None,
    sender_factory: SenderFactory | None = None,
    quota_clock: Callable[[], Any] | None = None,
    create_tables: bool = True,
) -> GatewayServices:
    """Assemble the gateway from settings; every collaborator is overridable."""

    settings = settings or get_settings()
    if not settings.vault_key:
        raise RuntimeError("CREDENTIAL_VAULT_KEY must be set.")
    if session_factory is None:
        session_factory = get_sessionmaker(settings.database_url)
    if create_tables:
        init_db(session_factory.kw["bind"])

    vault = CredentialVault(settings.vault_key)
    tenants = TenantService(session_factory)
    conversations = ConversationService(SqlConversationRepository(session_factory))
    processed = ProcessedMessageStore(session_factory, capacity=settings.processed_ids_capacity)
    quota = OutboundQuotaManager(
        quota_counter or SqlQuotaCounter(session_factory),
        settings.daily_send_limit,
        clock=quota_clock,
    )
    replies = replies or OpenAIReplyGenerator(model=settings.openai_model)
    registry = ChannelRegistry(session_factory, vault)

    common: dict[str, Any] = {
        "registry": registry,
        "conversations": conversations,
        "processed": processed,
        "replies": replies,
        "profiles": tenants.load_profile,
    }
    email = EmailChannelDriver(
        **common,
        quota=quota,
        shared_sender=settings.shared_sender,
        filters=settings.email_filters,
        max_per_cycle=settings.email_max_per_cycle,
        cycle_timeout=float(settings.email_cycle_timeout_seconds),
        mailbox_factory=mailbox_factory,
        sender_factory=sender_factory,
    )
    telegram = TelegramBotDriver(
        api_base=settings.telegram_api_base,
        public_base_url=settings.public_base_url,
        session=http_session,
        timeout=settings.http_timeout_seconds,
        **common,
    )
    whatsapp = WhatsAppCloudDriver(
        graph_base=settings.whatsapp_graph_base,
        api_version=settings.whatsapp_api_version,
        public_base_url=settings.public_base_url,
        session=http_session,
        timeout=settings.http_timeout_seconds,
        **common,
    )
    for driver in (email, telegram, whatsapp):
        registry.register_driver(driver)

    return GatewayServices(
        settings=settings,
        session_factory=session_factory,
        tenants=tenants,
        conversations=conversations,
        processed=processed,
        quota=quota,
        replies=replies,
        registry=registry,
        email=email,
        telegram=telegram,
        whatsapp=whatsapp,
    )


def get_services(request: Request) -> GatewayServices:
    """FastAPI dependency returning the app's services, built on first use."""

    services = getattr(request.app.state, "services", None)
    if services is None:
        logger.info("Initialising gateway services")
        services = build_services()
        request.app.state.services = services
    return services


__all__ = ["GatewayServices", "build_services", "get_services"]
