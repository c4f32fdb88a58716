"""Email channel driver: IMAP polling and SMTP replies.

A poll cycle opens the tenant's mailbox and walks the unseen messages. Mail
already in the processed log is passed over; at most ``max_per_cycle`` new
messages are taken per cycle. Loops and automated mail are filtered out, each
remaining message is threaded onto the sender's conversation, the reasoning
service drafts a reply and it is submitted over SMTP with the original thread
headers.

Messages are fetched with ``BODY.PEEK[]`` so they stay unseen until a reply
was dispatched. The processed-id log and the channel's ``last_activity_at``
are persisted once at the end of the cycle, also when the cycle stops early.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import formataddr, make_msgid, parseaddr
from typing import Any, Protocol
from uuid import UUID

import aioimaplib
import aiosmtplib
from bs4 import BeautifulSoup

from ..config import EmailFilterSettings, SharedSenderSettings
from ..conversations.dedup import ProcessedMessageLog, ProcessedMessageStore
from ..conversations.models import ChannelType, NormalizedMessage
from ..conversations.service import ConversationService
from ..errors import ChannelConnectionError, DispatchFailure, QuotaExceeded, ReplyGenerationFailure
from ..outbound.quota import OutboundQuotaManager, QuotaDecision
from ..replies.prompts import TenantProfile
from ..replies.service import ReplyGenerator
from .base import ChannelDriver, ProbeResult
from .email_filters import EmailFilter, SkipReason
from .registry import ChannelRegistry
from .schemas import EmailChannelConfig

logger = logging.getLogger(__name__)

_QUOTED_HEADER = re.compile(r"^\s*On .{0,200}wrote:\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class EmailEndpoint:
    """Connection details for one tenant mailbox."""

    address: str
    imap_host: str
    imap_port: int
    username: str
    password: str
    display_name: str | None = None
    use_shared_sender: bool = False
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None

    @classmethod
    def from_config(
        cls, endpoint_config: Mapping[str, Any], secrets: Mapping[str, Any]
    ) -> "EmailEndpoint":
        address = str(endpoint_config["address"])
        password = str(secrets.get("password") or "")
        return cls(
            address=address,
            imap_host=str(endpoint_config["imap_host"]),
            imap_port=int(endpoint_config.get("imap_port") or 993),
            username=str(endpoint_config.get("username") or address),
            password=password,
            display_name=endpoint_config.get("display_name"),
            use_shared_sender=bool(endpoint_config.get("use_shared_sender")),
            smtp_host=endpoint_config.get("smtp_host"),
            smtp_port=int(endpoint_config.get("smtp_port") or 587),
            smtp_username=endpoint_config.get("smtp_username") or address,
            smtp_password=secrets.get("smtp_password") or password,
        )


@dataclass(frozen=True)
class InboundEmail:
    sequence: str
    message_id: str
    sender: str
    sender_name: str | None
    subject: str
    text: str
    references: tuple[str, ...] = ()
    has_message_id: bool = True


@dataclass(frozen=True)
class SmtpIdentity:
    host: str
    port: int
    username: str
    password: str
    from_address: str


@dataclass
class MessageFailure:
    message_id: str
    stage: str
    error: str


@dataclass
class PollResult:
    """Outcome of one poll cycle for one tenant."""

    tenant_id: UUID
    examined: int = 0
    replied: int = 0
    skipped: Counter = field(default_factory=Counter)
    failures: list[MessageFailure] = field(default_factory=list)
    quota: QuotaDecision | None = None
    timed_out: bool = False
    error: str | None = None

    @property
    def quota_exhausted(self) -> bool:
        return self.quota is not None and not self.quota.allowed

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "examined": self.examined,
            "replied": self.replied,
            "skipped": dict(self.skipped),
            "failures": [failure.__dict__ for failure in self.failures],
            "quota": self.quota.as_dict() if self.quota else None,
            "timed_out": self.timed_out,
            "error": self.error,
        }


# Transports ------------------------------------------------------------------


class Mailbox(Protocol):
    async def open(self) -> None: ...

    async def search_unseen(self) -> list[str]: ...

    async def fetch(self, sequence: str) -> bytes | None: ...

    async def mark_seen(self, sequence: str) -> None: ...

    async def close(self) -> None: ...


class MailSender(Protocol):
    async def verify(self) -> None: ...

    async def send(self, message: EmailMessage) -> None: ...


class ImapMailbox:
    """INBOX access over IMAP4 with TLS using :mod:`aioimaplib`."""

    def __init__(self, endpoint: EmailEndpoint, *, timeout: float = 30.0) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._client: aioimaplib.IMAP4_SSL | None = None

    @property
    def client(self) -> aioimaplib.IMAP4_SSL:
        if self._client is None:
            raise ChannelConnectionError("Mailbox is not open")
        return self._client

    async def open(self) -> None:
        endpoint = self._endpoint
        try:
            self._client = aioimaplib.IMAP4_SSL(
                host=endpoint.imap_host, port=endpoint.imap_port, timeout=self._timeout
            )
            await self._client.wait_hello_from_server()
            response = await self._client.login(endpoint.username, endpoint.password)
            if response.result != "OK":
                raise ChannelConnectionError(f"IMAP login rejected for {endpoint.username}")
            response = await self._client.select("INBOX")
            if response.result != "OK":
                raise ChannelConnectionError("IMAP server refused to open INBOX")
        except ChannelConnectionError:
            raise
        except Exception as exc:
            raise ChannelConnectionError(
                f"IMAP connection to {endpoint.imap_host}:{endpoint.imap_port} failed: {exc}"
            ) from exc

    async def search_unseen(self) -> list[str]:
        try:
            response = await self.client.search("UNSEEN")
        except Exception as exc:
            raise ChannelConnectionError(f"IMAP search failed: {exc}") from exc
        if response.result != "OK":
            raise ChannelConnectionError("IMAP search for unseen messages failed")
        if not response.lines or not response.lines[0]:
            return []
        first = response.lines[0]
        text = first.decode() if isinstance(first, (bytes, bytearray)) else str(first)
        return [token for token in text.split() if token.isdigit()]

    async def fetch(self, sequence: str) -> bytes | None:
        try:
            response = await self.client.fetch(sequence, "(BODY.PEEK[])")
        except Exception as exc:
            raise ChannelConnectionError(f"IMAP fetch failed: {exc}") from exc
        if response.result != "OK":
            return None
        for line in response.lines:
            # Literal message data is delivered as a bytearray.
            if isinstance(line, bytearray):
                return bytes(line)
        return None

    async def mark_seen(self, sequence: str) -> None:
        await self.client.store(sequence, "+FLAGS", "(\\Seen)")

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.logout()
        except Exception as exc:
            logger.debug("IMAP logout failed: %s", exc)
        finally:
            self._client = None


class SmtpSender:
    """Message submission with :mod:`aiosmtplib`; port 465 uses implicit TLS."""

    def __init__(self, identity: SmtpIdentity, *, timeout: float = 30.0) -> None:
        self._identity = identity
        self._timeout = timeout

    async def verify(self) -> None:
        identity = self._identity
        smtp = aiosmtplib.SMTP(
            hostname=identity.host,
            port=identity.port,
            use_tls=identity.port == 465,
            timeout=self._timeout,
        )
        try:
            await smtp.connect()
            await smtp.login(identity.username, identity.password)
        except Exception as exc:
            raise ChannelConnectionError(
                f"SMTP login to {identity.host}:{identity.port} failed: {exc}"
            ) from exc
        finally:
            if smtp.is_connected:
                await smtp.quit()

    async def send(self, message: EmailMessage) -> None:
        identity = self._identity
        try:
            await aiosmtplib.send(
                message,
                hostname=identity.host,
                port=identity.port,
                username=identity.username,
                password=identity.password,
                use_tls=identity.port == 465,
                timeout=self._timeout,
            )
        except Exception as exc:
            raise DispatchFailure(f"SMTP send via {identity.host} failed: {exc}") from exc


MailboxFactory = Callable[[EmailEndpoint], Mailbox]
SenderFactory = Callable[[SmtpIdentity], MailSender]


# Parsing ---------------------------------------------------------------------


def _html_to_text(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return soup.get_text("\n")


def strip_quoted_text(body: str) -> str:
    """Drop quoted history so only the newest customer text remains."""

    lines: list[str] = []
    for line in body.splitlines():
        if line.lstrip().startswith(">") or _QUOTED_HEADER.match(line):
            break
        lines.append(line.rstrip())
    cleaned = "\n".join(lines).strip()
    return re.sub(r"\n{3,}", "\n\n", cleaned) or body.strip()


def parse_inbound(raw: bytes, sequence: str, mailbox_address: str) -> InboundEmail:
    """Parse a fetched RFC 5322 message.

    The identifier is the Message-ID header, or ``seq-<n>@<mailbox>`` when the
    sender omitted it.

    Raises:
        ValueError: If the message has no usable sender address.
    """

    message = message_from_bytes(raw, policy=policy.default)
    sender_name, sender = parseaddr(str(message.get("From", "")))
    sender = sender.strip().lower()
    if "@" not in sender:
        raise ValueError("Message has no sender address")
    message_id = str(message.get("Message-ID", "") or "").strip()
    has_message_id = bool(message_id)
    if not has_message_id:
        message_id = f"seq-{sequence}@{mailbox_address}"

    body_part = message.get_body(preferencelist=("plain", "html"))
    text = ""
    if body_part is not None:
        content = body_part.get_content()
        if body_part.get_content_subtype() == "html":
            content = _html_to_text(content)
        text = strip_quoted_text(content)

    references = tuple(str(message.get("References", "") or "").split())
    return InboundEmail(
        sequence=sequence,
        message_id=message_id,
        sender=sender,
        sender_name=sender_name or None,
        subject=str(message.get("Subject", "") or "").strip(),
        text=text,
        references=references,
        has_message_id=has_message_id,
    )


def reply_subject(subject: str) -> str:
    subject = subject.strip() or "(no subject)"
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def render_html(text: str) -> str:
    paragraphs = [p for p in re.split(r"\n{2,}", text.strip()) if p.strip()]
    body = "".join(
        f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs
    )
    return f"<html><body>{body}</body></html>"


def build_reply(
    *,
    from_address: str,
    display_name: str | None,
    reply_to: str | None,
    recipient: str,
    subject: str,
    text: str,
    in_reply_to: str | None = None,
    references: Sequence[str] = (),
) -> EmailMessage:
    """Compose a threaded reply carrying plain-text and HTML bodies."""

    message = EmailMessage()
    message["From"] = formataddr((display_name, from_address)) if display_name else from_address
    message["To"] = recipient
    if reply_to and reply_to.lower() != from_address.lower():
        message["Reply-To"] = reply_to
    message["Subject"] = reply_subject(subject)
    message["Message-ID"] = make_msgid(domain=from_address.rpartition("@")[2] or None)
    if in_reply_to:
        message["In-Reply-To"] = in_reply_to
        chain = [ref for ref in references if ref != in_reply_to]
        message["References"] = " ".join([*chain, in_reply_to])
    message.set_content(text)
    message.add_alternative(render_html(text), subtype="html")
    return message


# Driver ----------------------------------------------------------------------


class EmailChannelDriver(ChannelDriver):
    """Poll-based email channel."""

    channel_type = ChannelType.EMAIL
    config_model = EmailChannelConfig
    secret_fields = frozenset({"password", "smtp_password"})

    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        conversations: ConversationService,
        processed: ProcessedMessageStore,
        replies: ReplyGenerator,
        profiles: Callable[[UUID], TenantProfile],
        quota: OutboundQuotaManager,
        shared_sender: SharedSenderSettings,
        filters: EmailFilterSettings,
        max_per_cycle: int = 10,
        cycle_timeout: float = 120.0,
        mailbox_factory: MailboxFactory | None = None,
        sender_factory: SenderFactory | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._registry = registry
        self._conversations = conversations
        self._processed = processed
        self._replies = replies
        self._profiles = profiles
        self._quota = quota
        self._shared_sender = shared_sender
        self._filter = EmailFilter(filters)
        self.max_per_cycle = max_per_cycle
        self.cycle_timeout = cycle_timeout
        self._mailbox_factory = mailbox_factory or ImapMailbox
        self._sender_factory = sender_factory or SmtpSender
        self._clock = clock
        self._locks: dict[UUID, asyncio.Lock] = {}

    # Helpers -----------------------------------------------------------------
    def _lock_for(self, tenant_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def _now(self) -> float:
        return self._clock() if self._clock else asyncio.get_running_loop().time()

    def _smtp_identity(self, endpoint: EmailEndpoint) -> SmtpIdentity:
        if endpoint.use_shared_sender:
            shared = self._shared_sender
            if not shared.configured:
                raise ChannelConnectionError("The shared sender is not configured")
            return SmtpIdentity(
                host=str(shared.host),
                port=shared.port,
                username=str(shared.username),
                password=str(shared.password),
                from_address=str(shared.from_address or shared.username),
            )
        if not endpoint.smtp_host:
            raise ChannelConnectionError("smtp_host is required unless the shared sender is used")
        return SmtpIdentity(
            host=endpoint.smtp_host,
            port=endpoint.smtp_port,
            username=endpoint.smtp_username or endpoint.address,
            password=endpoint.smtp_password or endpoint.password,
            from_address=endpoint.address,
        )

    def _own_addresses(self, endpoint: EmailEndpoint) -> tuple[str, ...]:
        addresses = [endpoint.address]
        if endpoint.use_shared_sender and self._shared_sender.from_address:
            addresses.append(self._shared_sender.from_address)
        return tuple(addresses)

    def _check_quota(self, endpoint: EmailEndpoint) -> QuotaDecision | None:
        # Tenant-owned SMTP credentials are not subject to the shared cap.
        if not endpoint.use_shared_sender:
            return None
        return self._quota.try_consume()

    # ChannelDriver -----------------------------------------------------------
    def identity(self, endpoint_config: Mapping[str, Any]) -> str | None:
        return endpoint_config.get("address")

    async def probe(
        self, tenant_id: UUID, endpoint_config: Mapping[str, Any], secrets: Mapping[str, Any]
    ) -> ProbeResult:
        endpoint = EmailEndpoint.from_config(endpoint_config, secrets)
        mailbox = self._mailbox_factory(endpoint)
        try:
            await mailbox.open()
        finally:
            await mailbox.close()
        identity = self._smtp_identity(endpoint)
        if not endpoint.use_shared_sender:
            await self._sender_factory(identity).verify()
        logger.info("Email probe succeeded for tenant %s (%s)", tenant_id, endpoint.address)
        return ProbeResult(endpoint_config={"username": endpoint.username})

    async def send_text(
        self,
        tenant_id: UUID,
        participant_key: str,
        text: str,
        thread: Mapping[str, Any] | None = None,
    ) -> str | None:
        """Send a manual agent email, threaded onto ``thread`` when given.

        Raises:
            QuotaExceeded: If the shared sender has no sends left today.
            DispatchFailure: If SMTP submission fails.
        """

        credentials = await asyncio.to_thread(
            self._registry.credentials, tenant_id, ChannelType.EMAIL
        )
        endpoint = EmailEndpoint.from_config(credentials.endpoint_config, credentials.secrets)
        identity = self._smtp_identity(endpoint)
        decision = self._check_quota(endpoint)
        if decision is not None and not decision.allowed:
            raise QuotaExceeded(decision)
        thread = thread or {}
        message = build_reply(
            from_address=identity.from_address,
            display_name=endpoint.display_name,
            reply_to=endpoint.address,
            recipient=participant_key,
            subject=str(thread.get("subject") or ""),
            text=text,
            in_reply_to=thread.get("message_id"),
            references=thread.get("references") or (),
        )
        await self._sender_factory(identity).send(message)
        await asyncio.to_thread(self._registry.touch, tenant_id, ChannelType.EMAIL)
        return str(message["Message-ID"])

    # Polling -----------------------------------------------------------------
    async def poll(self, tenant_id: UUID) -> PollResult:
        """Run one poll cycle; cycles of the same tenant never overlap.

        Raises:
            ChannelConnectionError: If the mailbox cannot be reached.
            ChannelNotConnected: If the tenant has no active email channel.
            DecryptionError: If the stored credentials need re-entry.
        """

        async with self._lock_for(tenant_id):
            return await self._run_cycle(tenant_id)

    async def poll_all(self, tenant_ids: Sequence[UUID] | None = None) -> list[PollResult]:
        """Poll several tenants concurrently; failures are reported per tenant."""

        if tenant_ids is None:
            tenant_ids = await asyncio.to_thread(self._registry.active_channels, ChannelType.EMAIL)

        async def _one(tenant_id: UUID) -> PollResult:
            try:
                return await self.poll(tenant_id)
            except Exception as exc:
                logger.error("Email poll failed for tenant %s: %s", tenant_id, exc)
                return PollResult(tenant_id=tenant_id, error=f"{type(exc).__name__}: {exc}")

        return list(await asyncio.gather(*(_one(tenant_id) for tenant_id in tenant_ids)))

    async def _run_cycle(self, tenant_id: UUID) -> PollResult:
        credentials = await asyncio.to_thread(
            self._registry.credentials, tenant_id, ChannelType.EMAIL
        )
        endpoint = EmailEndpoint.from_config(credentials.endpoint_config, credentials.secrets)
        processed = await asyncio.to_thread(
            self._processed.load, tenant_id, ChannelType.EMAIL.value
        )
        result = PollResult(tenant_id=tenant_id)
        deadline = self._now() + self.cycle_timeout

        mailbox = self._mailbox_factory(endpoint)
        try:
            await mailbox.open()
            candidates = await mailbox.search_unseen()
            logger.debug("Tenant %s has %d unseen candidates", tenant_id, len(candidates))
            # Only new mail counts toward max_per_cycle; unseen mail that was
            # already handled must not hide newer messages behind it.
            for sequence in candidates:
                if result.examined >= self.max_per_cycle:
                    break
                if self._now() >= deadline:
                    result.timed_out = True
                    logger.warning("Email cycle for tenant %s timed out", tenant_id)
                    break
                inbound = await self._read_candidate(tenant_id, endpoint, mailbox, sequence, result)
                if inbound is None:
                    continue
                if inbound.message_id in processed:
                    result.skipped[SkipReason.DUPLICATE.value] += 1
                    continue
                result.examined += 1
                keep_going = await self._handle_message(
                    tenant_id, endpoint, mailbox, inbound, processed, result
                )
                if not keep_going:
                    break
        finally:
            await mailbox.close()
            await asyncio.to_thread(
                self._processed.save, tenant_id, ChannelType.EMAIL.value, processed
            )
            if result.examined:
                await asyncio.to_thread(self._registry.touch, tenant_id, ChannelType.EMAIL)

        logger.info(
            "Email cycle for tenant %s: examined=%d replied=%d skipped=%d failures=%d",
            tenant_id,
            result.examined,
            result.replied,
            sum(result.skipped.values()),
            len(result.failures),
        )
        return result

    async def _read_candidate(
        self,
        tenant_id: UUID,
        endpoint: EmailEndpoint,
        mailbox: Mailbox,
        sequence: str,
        result: PollResult,
    ) -> InboundEmail | None:
        raw = await mailbox.fetch(sequence)
        if raw is None:
            result.failures.append(MessageFailure(f"seq-{sequence}", "fetch", "empty response"))
            return None
        try:
            return parse_inbound(raw, sequence, endpoint.address)
        except Exception as exc:
            logger.warning("Could not parse message %s for tenant %s: %s", sequence, tenant_id, exc)
            result.failures.append(MessageFailure(f"seq-{sequence}", "parse", str(exc)))
            return None

    async def _handle_message(
        self,
        tenant_id: UUID,
        endpoint: EmailEndpoint,
        mailbox: Mailbox,
        inbound: InboundEmail,
        processed: ProcessedMessageLog,
        result: PollResult,
    ) -> bool:
        """Process one new message; return ``False`` to stop the cycle."""

        reason = self._filter.skip_reason(
            inbound.sender, inbound.subject, self._own_addresses(endpoint)
        )
        if reason is not None:
            logger.debug("Skipping %s from %s: %s", inbound.message_id, inbound.sender, reason.value)
            processed.add(inbound.message_id)
            result.skipped[reason.value] += 1
            return True

        # The send slot is reserved before any thread is opened or reply generated.
        decision = self._check_quota(endpoint)
        if decision is not None:
            result.quota = decision
            if not decision.allowed:
                logger.warning(
                    "Shared sender quota exhausted; tenant %s cycle stops until %s",
                    tenant_id,
                    decision.resets_at.isoformat(),
                )
                return False

        normalized = NormalizedMessage(
            tenant_id=tenant_id,
            channel_type=ChannelType.EMAIL,
            participant_key=inbound.sender,
            text=inbound.text,
            channel_ref=inbound.message_id,
            sender_name=inbound.sender_name,
            metadata={
                "subject": inbound.subject,
                "message_id": inbound.message_id if inbound.has_message_id else None,
                "references": list(inbound.references),
            },
        )
        conversation = await asyncio.to_thread(self._conversations.thread, normalized)
        history = await asyncio.to_thread(
            self._conversations.history, tenant_id, conversation.id
        )
        profile = await asyncio.to_thread(self._profiles, tenant_id)
        try:
            reply = await asyncio.to_thread(
                self._replies.generate, profile, inbound.text, history, channel="email"
            )
        except ReplyGenerationFailure as exc:
            if decision is not None:
                result.quota = self._quota.release(decision)
            await asyncio.to_thread(self._conversations.record_inbound, conversation, normalized)
            processed.add(inbound.message_id)
            result.failures.append(MessageFailure(inbound.message_id, "reply", str(exc)))
            return True

        await asyncio.to_thread(self._conversations.record_inbound, conversation, normalized)
        identity = self._smtp_identity(endpoint)
        message = build_reply(
            from_address=identity.from_address,
            display_name=endpoint.display_name,
            reply_to=endpoint.address,
            recipient=inbound.sender,
            subject=inbound.subject,
            text=reply,
            in_reply_to=inbound.message_id if inbound.has_message_id else None,
            references=inbound.references,
        )
        try:
            await self._sender_factory(identity).send(message)
        except DispatchFailure as exc:
            logger.error("Reply to %s for tenant %s failed: %s", inbound.sender, tenant_id, exc)
            processed.add(inbound.message_id)
            result.failures.append(MessageFailure(inbound.message_id, "dispatch", str(exc)))
            return True

        await asyncio.to_thread(
            self._conversations.record_outbound,
            tenant_id,
            conversation.id,
            reply,
            channel_ref=str(message["Message-ID"]),
            metadata={"subject": str(message["Subject"]), "in_reply_to": inbound.message_id},
        )
        try:
            await mailbox.mark_seen(inbound.sequence)
        except Exception as exc:
            # The processed log still prevents a second reply.
            logger.warning("Could not flag %s as seen: %s", inbound.message_id, exc)
        processed.add(inbound.message_id)
        result.replied += 1
        return True


__all__ = [
    "EmailChannelDriver",
    "EmailEndpoint",
    "ImapMailbox",
    "InboundEmail",
    "MessageFailure",
    "PollResult",
    "SmtpIdentity",
    "SmtpSender",
    "build_reply",
    "parse_inbound",
    "reply_subject",
    "strip_quoted_text",
]
