import asyncio
import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from gateway.channels.webhook_base import Outcome
from gateway.channels.whatsapp import SIGNATURE_HEADER

PHONE_NUMBER_ID = "109876543210"
VERIFY_TOKEN = "verify-me-please"


def _delivery(*messages, contacts=()):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": PHONE_NUMBER_ID},
                            "contacts": list(contacts),
                            "messages": list(messages),
                        },
                    }
                ],
            }
        ],
    }


def _text(message_id, body, sender="971501234567"):
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1710408600",
        "type": "text",
        "text": {"body": body},
    }


def _connect(gateway, tenant, **extra):
    gateway.http.respond(
        PHONE_NUMBER_ID,
        {"id": PHONE_NUMBER_ID, "display_phone_number": "+1 555 0100", "verified_name": "Acme"},
    )
    config = {
        "phone_number_id": PHONE_NUMBER_ID,
        "access_token": "EAAG-access-token",
        "verify_token": VERIFY_TOKEN,
        **extra,
    }
    status = asyncio.run(gateway.services.registry.connect(tenant.id, "business_messaging", config))
    gateway.http.respond("messages", {"messages": [{"id": "wamid.out"}]})
    gateway.http.calls.clear()
    return status


@pytest.fixture
def tenant(gateway):
    tenant = gateway.create_tenant()
    _connect(gateway, tenant)
    return tenant


@pytest.fixture
def client(app_factory):
    return TestClient(app_factory())


def _sends(gateway):
    return [call for call in gateway.http.calls if call["endpoint"] == "messages"]


def test_connect_reports_display_number(gateway):
    tenant = gateway.create_tenant()

    status = _connect(gateway, tenant)

    assert status.identity == "+1 555 0100"
    assert status.endpoint["webhook_url"].endswith(f"/api/webhooks/whatsapp/{tenant.id}")
    assert "access_token" not in status.endpoint
    assert "verify_token" not in status.endpoint


def test_handshake_echoes_challenge(tenant, client):
    response = client.get(
        f"/api/webhooks/whatsapp/{tenant.id}",
        params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "abc123"},
    )

    assert response.status_code == 200
    assert response.text == "abc123"


@pytest.mark.parametrize(
    "params",
    [
        {"hub.mode": "subscribe", "hub.verify_token": "wrong-token", "hub.challenge": "abc123"},
        {"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "abc123"},
        {"hub.mode": "subscribe", "hub.challenge": "abc123"},
    ],
)
def test_handshake_rejects_mismatch(tenant, client, params):
    response = client.get(f"/api/webhooks/whatsapp/{tenant.id}", params=params)

    assert response.status_code == 403


def test_handshake_for_unconnected_tenant_fails(gateway, client):
    other = gateway.create_tenant("Globex")

    response = client.get(
        f"/api/webhooks/whatsapp/{other.id}",
        params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "x"},
    )

    assert response.status_code == 403


def test_texts_from_one_number_share_a_conversation(gateway, tenant, client):
    first = client.post(
        f"/api/webhooks/whatsapp/{tenant.id}",
        json=_delivery(
            _text("wamid.1", "Hi there"),
            contacts=[{"wa_id": "971501234567", "profile": {"name": "Omar"}}],
        ),
    )
    second = client.post(
        f"/api/webhooks/whatsapp/{tenant.id}", json=_delivery(_text("wamid.2", "Are you open?"))
    )

    assert first.json() == {"status": "accepted"}
    assert second.json() == {"status": "accepted"}
    [summary] = gateway.services.conversations.list_conversations(tenant.id).items
    detail = gateway.services.conversations.get_conversation(tenant.id, summary.id)
    assert summary.participant_key == "971501234567"
    assert [m.role for m in detail.messages] == ["customer", "agent", "customer", "agent"]
    assert detail.messages[0].metadata["sender_name"] == "Omar"
    assert [m.channel_ref for m in detail.messages[1::2]] == ["wamid.out", "wamid.out"]

    send = _sends(gateway)[0]
    assert send["json"]["to"] == "971501234567"
    assert send["json"]["text"]["body"] == gateway.replies.text
    assert send["headers"]["Authorization"] == "Bearer EAAG-access-token"


def test_delivery_is_handed_to_a_background_task(gateway, tenant, client, monkeypatch):
    handed_over = []
    monkeypatch.setattr(
        gateway.services.whatsapp,
        "handle_delivery",
        lambda tenant_id, payload: handed_over.append((tenant_id, payload)),
    )
    payload = _delivery(_text("wamid.9", "Hello"))

    response = client.post(f"/api/webhooks/whatsapp/{tenant.id}", json=payload)

    assert response.json() == {"status": "accepted"}
    assert handed_over == [(tenant.id, payload)]
    assert gateway.replies.calls == []


def test_redelivered_message_is_processed_once(gateway, tenant, client):
    payload = _delivery(_text("wamid.1", "Hi"))

    client.post(f"/api/webhooks/whatsapp/{tenant.id}", json=payload)
    client.post(f"/api/webhooks/whatsapp/{tenant.id}", json=payload)

    assert len(_sends(gateway)) == 1


def test_status_updates_and_media_are_ignored(gateway, tenant):
    payload = _delivery({"from": "971501234567", "id": "wamid.img", "type": "image"})
    payload["entry"][0]["changes"][0]["value"]["statuses"] = [{"id": "wamid.out", "status": "read"}]

    outcomes = gateway.services.whatsapp.handle_delivery(tenant.id, payload)

    assert outcomes == []
    assert gateway.services.conversations.list_conversations(tenant.id).total == 0


def test_auto_reply_disabled_only_records(gateway):
    tenant = gateway.create_tenant()
    _connect(gateway, tenant, auto_reply=False)

    outcomes = gateway.services.whatsapp.handle_delivery(
        tenant.id, _delivery(_text("wamid.1", "Hi"))
    )

    assert outcomes == [Outcome.RECORDED]
    assert _sends(gateway) == []
    assert gateway.replies.calls == []


def test_signed_deliveries_require_a_valid_signature(gateway, client):
    tenant = gateway.create_tenant()
    _connect(gateway, tenant, app_secret="app-secret")
    body = json.dumps(_delivery(_text("wamid.1", "Hi"))).encode()
    signature = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    url = f"/api/webhooks/whatsapp/{tenant.id}"
    headers = {"Content-Type": "application/json"}

    forged = client.post(url, content=body, headers={**headers, SIGNATURE_HEADER: "sha256=00"})
    unsigned = client.post(url, content=body, headers=headers)

    assert forged.status_code == 200
    assert forged.json() == {"status": "ignored"}
    assert unsigned.json() == {"status": "ignored"}
    assert gateway.replies.calls == []

    signed = client.post(url, content=body, headers={**headers, SIGNATURE_HEADER: signature})

    assert signed.json() == {"status": "accepted"}
    assert len(_sends(gateway)) == 1


def test_malformed_delivery_is_ignored(tenant, client):
    response = client.post(
        f"/api/webhooks/whatsapp/{tenant.id}",
        content=b"[1, 2",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


def test_send_failure_is_only_logged(gateway, tenant, caplog):
    gateway.http.respond("messages", {"error": {"message": "bad token"}}, status_code=401)

    with caplog.at_level("ERROR"):
        outcomes = gateway.services.whatsapp.handle_delivery(
            tenant.id, _delivery(_text("wamid.1", "Hi"))
        )

    assert outcomes == [Outcome.DISPATCH_FAILED]
    assert any("failed" in record.getMessage() for record in caplog.records)
