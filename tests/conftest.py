import datetime as dt
import email.utils
import pathlib
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any

import email_validator
import pytest
from fastapi import FastAPI
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from gateway.config import get_settings, reset_settings_cache
from gateway.errors import ChannelConnectionError, DispatchFailure, ReplyGenerationFailure
from gateway.models import Tenant
from gateway.models.session import get_engine, get_sessionmaker
from gateway.rate_limit import limiter
from gateway.security import create_access_token, reset_jwt_settings_cache
from gateway.services import GatewayServices, build_services

VAULT_KEY = "unit-test-master-key"

# Accept the reserved .test domains used throughout the suite.
email_validator.TEST_ENVIRONMENT = True


# Fakes -----------------------------------------------------------------------


class FakeReplies:
    """Reply generator returning canned text and recording every call."""

    def __init__(self, text: str = "Thanks for reaching out! We'll help right away.") -> None:
        self.text = text
        self.error: str | None = None
        self.calls: list[dict[str, Any]] = []

    def generate(self, profile, message, history=(), *, channel="email") -> str:
        self.calls.append(
            {"profile": profile, "message": message, "history": list(history), "channel": channel}
        )
        if self.error:
            raise ReplyGenerationFailure(self.error)
        return self.text


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeHttpSession:
    """Stand-in for ``requests.Session`` keyed on the URL's last path segment."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: dict[str, FakeResponse] = {}

    def respond(self, endpoint: str, payload: Any, status_code: int = 200) -> None:
        self.responses[endpoint] = FakeResponse(status_code, payload)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        endpoint = url.rstrip("/").rsplit("/", 1)[-1]
        self.calls.append({"method": method, "url": url, "endpoint": endpoint, **kwargs})
        return self.responses.get(endpoint, FakeResponse(200, {"ok": True, "result": {}}))

    def endpoints(self) -> list[str]:
        return [call["endpoint"] for call in self.calls]


@dataclass
class StoredMail:
    raw: bytes
    seen: bool = False


class FakeMailServer:
    """In-memory IMAP server shared by every mailbox the driver opens."""

    def __init__(self) -> None:
        self.messages: dict[str, StoredMail] = {}
        self.fail_open = False
        self.opened = 0
        self.closed = 0

    def deliver(
        self,
        *,
        sender: str = "Jane Customer <jane@customer.test>",
        subject: str = "Question about pricing",
        body: str = "Hi, how much does the premium plan cost?",
        message_id: str | None = None,
        with_message_id: bool = True,
        references: str | None = None,
    ) -> str:
        message = EmailMessage()
        message["From"] = sender
        message["To"] = "support@acme.test"
        message["Subject"] = subject
        message["Date"] = email.utils.formatdate()
        if with_message_id:
            message["Message-ID"] = message_id or email.utils.make_msgid(domain="customer.test")
        if references:
            message["References"] = references
        message.set_content(body)
        sequence = str(len(self.messages) + 1)
        self.messages[sequence] = StoredMail(raw=bytes(message))
        return sequence

    def mailbox(self, endpoint) -> "FakeMailbox":
        return FakeMailbox(self, endpoint)


class FakeMailbox:
    def __init__(self, server: FakeMailServer, endpoint) -> None:
        self.server = server
        self.endpoint = endpoint

    async def open(self) -> None:
        if self.server.fail_open:
            raise ChannelConnectionError(f"IMAP connection to {self.endpoint.imap_host} failed")
        self.server.opened += 1

    async def search_unseen(self) -> list[str]:
        return [seq for seq, mail in self.server.messages.items() if not mail.seen]

    async def fetch(self, sequence: str) -> bytes | None:
        mail = self.server.messages.get(sequence)
        return mail.raw if mail else None

    async def mark_seen(self, sequence: str) -> None:
        self.server.messages[sequence].seen = True

    async def close(self) -> None:
        self.server.closed += 1


class FakeSmtp:
    """Records submitted messages instead of talking to a server."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.identities: list[Any] = []
        self.fail_send = False
        self.fail_verify = False

    def sender(self, identity) -> "FakeSender":
        self.identities.append(identity)
        return FakeSender(self)


class FakeSender:
    def __init__(self, smtp: FakeSmtp) -> None:
        self.smtp = smtp

    async def verify(self) -> None:
        if self.smtp.fail_verify:
            raise ChannelConnectionError("SMTP login failed")

    async def send(self, message: EmailMessage) -> None:
        if self.smtp.fail_send:
            raise DispatchFailure("SMTP send failed: 554 rejected")
        self.smtp.sent.append(message)


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


# Fixtures --------------------------------------------------------------------


@pytest.fixture(autouse=True)
def gateway_env(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.setenv("CREDENTIAL_VAULT_KEY", VAULT_KEY)
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://gateway.test")
    monkeypatch.setenv("TENANT_TOKEN_SECRET", "super-secret-key")
    monkeypatch.setenv("TENANT_TOKEN_AUDIENCE", "channel-gateway")
    monkeypatch.setenv("TENANT_TOKEN_ISSUER", "auth.gateway")
    monkeypatch.setenv("TENANT_TOKEN_ALGORITHM", "HS256")
    monkeypatch.setenv("SHARED_SMTP_HOST", "smtp.platform.test")
    monkeypatch.setenv("SHARED_SMTP_USER", "outbound@platform.test")
    monkeypatch.setenv("SHARED_SMTP_PASSWORD", "platform-pass")
    monkeypatch.setenv("OPENAI_LANG", "English")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    reset_settings_cache()
    reset_jwt_settings_cache()
    limiter.reset()
    yield
    reset_settings_cache()
    reset_jwt_settings_cache()


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    engine = get_engine()
    factory = get_sessionmaker(engine=engine)
    yield factory
    engine.dispose()


@dataclass
class GatewayContext:
    services: GatewayServices
    replies: FakeReplies
    http: FakeHttpSession
    mail: FakeMailServer
    smtp: FakeSmtp
    clock: FakeClock
    tenants: dict[str, Tenant] = field(default_factory=dict)

    def create_tenant(self, name: str = "Acme", **profile: str) -> Tenant:
        tenant = self.services.tenants.register(
            name=name,
            email=f"owner@{name.lower()}.test",
            password="Secret123!",
            business_name=f"{name} Inc",
        )
        if profile:
            tenant = self.services.tenants.update_profile(tenant.id, **profile)
        self.tenants[name] = tenant
        return tenant

    def header(self, tenant: Tenant) -> dict[str, str]:
        token, _ = create_access_token(tenant)
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def gateway(session_factory: sessionmaker[Session]) -> GatewayContext:
    replies = FakeReplies()
    http = FakeHttpSession()
    mail = FakeMailServer()
    smtp = FakeSmtp()
    clock = FakeClock(dt.datetime(2024, 3, 14, 9, 30, tzinfo=dt.timezone.utc))
    services = build_services(
        get_settings(),
        session_factory=session_factory,
        replies=replies,
        http_session=http,
        mailbox_factory=mail.mailbox,
        sender_factory=smtp.sender,
        quota_clock=clock,
    )
    return GatewayContext(
        services=services, replies=replies, http=http, mail=mail, smtp=smtp, clock=clock
    )


@pytest.fixture
def app_factory(gateway: GatewayContext) -> Callable[[], FastAPI]:
    from gateway.main import create_app

    def _create_app() -> FastAPI:
        return create_app(gateway.services)

    return _create_app


@pytest.fixture
def email_config() -> dict[str, Any]:
    return {
        "address": "support@acme.test",
        "imap_host": "imap.acme.test",
        "password": "mailbox-pass",
        "display_name": "Acme Support",
        "use_shared_sender": True,
    }


__all__ = [
    "FakeClock",
    "FakeHttpSession",
    "FakeMailServer",
    "FakeReplies",
    "FakeResponse",
    "FakeSmtp",
    "GatewayContext",
    "VAULT_KEY",
]
