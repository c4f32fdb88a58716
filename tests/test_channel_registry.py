import asyncio
import json

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from gateway.channels import ChannelRegistry
from gateway.conversations import ChannelType
from gateway.errors import ChannelConnectionError, ChannelNotConnected, DecryptionError
from gateway.models import TenantChannel
from gateway.security.vault import CredentialVault

BOT_TOKEN = "123456:ABCdefGhIJKlmNoPQRsTUVwxyZ"


def _bot_ready(http) -> None:
    http.respond("getMe", {"ok": True, "result": {"id": 42, "is_bot": True, "username": "acme_bot"}})


def _row(session_factory, tenant_id, channel_type="bot") -> TenantChannel | None:
    with session_factory() as session:
        return session.scalars(
            select(TenantChannel).where(
                TenantChannel.tenant_id == tenant_id, TenantChannel.channel_type == channel_type
            )
        ).first()


def test_connect_bot_registers_webhook_and_hides_secrets(gateway, session_factory):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)

    status = asyncio.run(
        gateway.services.registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN})
    )

    assert status.connected
    assert status.identity == "@acme_bot"
    assert status.endpoint["webhook_url"] == f"https://gateway.test/api/webhooks/telegram/{tenant.id}"
    assert BOT_TOKEN not in json.dumps(status.model_dump(mode="json"))
    set_webhook = next(c for c in gateway.http.calls if c["endpoint"] == "setWebhook")
    assert set_webhook["json"]["url"] == status.endpoint["webhook_url"]
    assert len(set_webhook["json"]["secret_token"]) >= 32

    row = _row(session_factory, tenant.id)
    assert BOT_TOKEN not in json.dumps(row.endpoint_config)
    assert BOT_TOKEN not in row.encrypted_secret
    credentials = gateway.services.registry.credentials(tenant.id, ChannelType.BOT)
    assert credentials.secrets["bot_token"] == BOT_TOKEN
    assert credentials.secrets["webhook_secret"] == set_webhook["json"]["secret_token"]


def test_failed_probe_stores_nothing(gateway, session_factory):
    tenant = gateway.create_tenant()
    gateway.http.respond("getMe", {"ok": False, "description": "Unauthorized"}, status_code=401)

    with pytest.raises(ChannelConnectionError):
        asyncio.run(gateway.services.registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))

    assert _row(session_factory, tenant.id) is None
    assert not gateway.services.registry.status(tenant.id, "bot").connected


def test_invalid_config_is_rejected_before_probing(gateway):
    tenant = gateway.create_tenant()

    with pytest.raises(ValidationError):
        asyncio.run(gateway.services.registry.connect(tenant.id, "bot", {"bot_token": "short"}))

    assert gateway.http.calls == []


def test_email_probe_failure_stores_nothing(gateway, session_factory, email_config):
    tenant = gateway.create_tenant()
    gateway.mail.fail_open = True

    with pytest.raises(ChannelConnectionError):
        asyncio.run(gateway.services.registry.connect(tenant.id, "email", email_config))

    assert _row(session_factory, tenant.id, "email") is None


def test_email_with_own_smtp_verifies_login(gateway, email_config):
    tenant = gateway.create_tenant()
    config = dict(email_config, use_shared_sender=False, smtp_host="smtp.acme.test")
    gateway.smtp.fail_verify = True

    with pytest.raises(ChannelConnectionError):
        asyncio.run(gateway.services.registry.connect(tenant.id, "email", config))

    gateway.smtp.fail_verify = False
    status = asyncio.run(gateway.services.registry.connect(tenant.id, "email", config))
    assert status.connected
    assert "password" not in status.endpoint
    assert status.identity == "support@acme.test"


def test_reconnect_updates_the_same_row(gateway, session_factory):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)
    registry = gateway.services.registry

    asyncio.run(registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))
    asyncio.run(registry.disconnect(tenant.id, "bot"))
    asyncio.run(registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN + "x"}))

    with session_factory() as session:
        rows = session.scalars(select(TenantChannel)).all()
    assert len(rows) == 1
    assert rows[0].is_active


def test_disconnect_removes_webhook_and_deactivates(gateway, session_factory):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)
    registry = gateway.services.registry
    asyncio.run(registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))

    status = asyncio.run(registry.disconnect(tenant.id, "bot"))

    assert not status.connected
    assert "deleteWebhook" in gateway.http.endpoints()
    assert _row(session_factory, tenant.id).is_active is False
    with pytest.raises(ChannelNotConnected):
        registry.credentials(tenant.id, "bot")


def test_failed_deregistration_still_deactivates(gateway, session_factory):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)
    registry = gateway.services.registry
    asyncio.run(registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))
    gateway.http.respond("deleteWebhook", {"ok": False, "description": "boom"}, status_code=500)

    status = asyncio.run(registry.disconnect(tenant.id, "bot"))

    assert not status.connected
    assert _row(session_factory, tenant.id).is_active is False


def test_list_status_covers_every_channel_type(gateway):
    tenant = gateway.create_tenant()

    items = gateway.services.registry.list_status(tenant.id)

    assert [item.channel_type for item in items] == ["email", "bot", "business_messaging"]
    assert not any(item.connected for item in items)


def test_rotated_master_key_requires_reconnect(gateway, session_factory):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)
    asyncio.run(gateway.services.registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))

    rotated = ChannelRegistry(session_factory, CredentialVault("a-different-master-key"))

    with pytest.raises(DecryptionError):
        rotated.credentials(tenant.id, "bot")


def test_disconnect_after_key_rotation_still_deactivates(gateway, session_factory, monkeypatch):
    tenant = gateway.create_tenant()
    _bot_ready(gateway.http)
    registry = gateway.services.registry
    asyncio.run(registry.connect(tenant.id, "bot", {"bot_token": BOT_TOKEN}))
    gateway.http.calls.clear()
    monkeypatch.setattr(registry, "_vault", CredentialVault("a-different-master-key"))

    status = asyncio.run(registry.disconnect(tenant.id, "bot"))

    assert not status.connected
    assert _row(session_factory, tenant.id).is_active is False
    # The webhook cannot be deleted without the token.
    assert "deleteWebhook" not in gateway.http.endpoints()


def test_unknown_channel_type(gateway):
    tenant = gateway.create_tenant()

    with pytest.raises(KeyError):
        asyncio.run(gateway.services.registry.connect(tenant.id, "fax", {}))
