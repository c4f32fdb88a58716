import jwt
import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(app_factory):
    return TestClient(app_factory())


REGISTER_PAYLOAD = {
    "name": "Bloom Florists",
    "email": "Owner@Bloom.example",
    "password": "SuperSecret123!",
    "business_name": "Bloom Florists Ltd",
}


def _register(client, **overrides):
    return client.post("/api/tenant/accounts/register", json={**REGISTER_PAYLOAD, **overrides})


def test_register_returns_tenant_and_token(client):
    response = _register(client)

    assert response.status_code == 201
    data = response.json()
    assert data["tenant"]["email"] == "owner@bloom.example"
    assert data["tokens"]["token_type"] == "bearer"
    assert data["tokens"]["expires_in"] > 0
    claims = jwt.decode(
        data["tokens"]["access_token"],
        "super-secret-key",
        algorithms=["HS256"],
        audience="channel-gateway",
        issuer="auth.gateway",
    )
    assert claims["tenant_id"] == data["tenant"]["id"]


def test_duplicate_email_is_rejected(client):
    _register(client)

    response = _register(client, email="owner@bloom.example", name="Other")

    assert response.status_code == 409


def test_register_validates_payload(client):
    response = _register(client, password="short", email="not-an-email")

    assert response.status_code == 422


def test_login(client):
    _register(client)

    ok = client.post(
        "/api/tenant/accounts/login",
        json={"email": "owner@bloom.example", "password": "SuperSecret123!"},
    )
    wrong = client.post(
        "/api/tenant/accounts/login",
        json={"email": "owner@bloom.example", "password": "nope-nope"},
    )

    assert ok.status_code == 200
    assert ok.json()["tenant"]["name"] == "Bloom Florists"
    assert wrong.status_code == 401
    assert wrong.headers["WWW-Authenticate"] == "Bearer"


def test_account_routes_are_rate_limited(client):
    statuses = [
        client.post(
            "/api/tenant/accounts/login",
            json={"email": "nobody@bloom.example", "password": "whatever"},
        ).status_code
        for _ in range(6)
    ]

    assert statuses[:5] == [401] * 5
    assert statuses[5] == 429


def test_profile_read_and_update(client):
    token = _register(client).json()["tokens"]["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    initial = client.get("/api/profile", headers=headers)
    updated = client.put(
        "/api/profile",
        headers=headers,
        json={"tone": "professional", "knowledge_base": "Open 9-17, delivery in Dubai only."},
    )
    partial = client.put("/api/profile", headers=headers, json={"business_name": "Bloom"})

    assert initial.status_code == 200
    assert initial.json()["tone"] == "friendly"
    assert initial.json()["business_name"] == "Bloom Florists Ltd"
    assert updated.json()["tone"] == "professional"
    assert partial.json()["knowledge_base"] == "Open 9-17, delivery in Dubai only."
    assert partial.json()["business_name"] == "Bloom"


def test_profile_rejects_unknown_tone(client):
    token = _register(client).json()["tokens"]["access_token"]

    response = client.put(
        "/api/profile", headers={"Authorization": f"Bearer {token}"}, json={"tone": "sarcastic"}
    )

    assert response.status_code == 422


def test_profile_requires_a_session(client):
    assert client.get("/api/profile").status_code == 401


def test_profile_update_for_another_tenant_is_forbidden(gateway, client):
    other = gateway.create_tenant("Globex")
    token = _register(client).json()["tokens"]["access_token"]

    response = client.put(
        "/api/profile",
        headers={"Authorization": f"Bearer {token}"},
        json={"tenant_id": str(other.id), "tone": "concise"},
    )

    assert response.status_code == 403
    assert gateway.services.tenants.get(other.id).tone != "concise"


def test_profile_update_with_own_tenant_id_is_allowed(gateway, client):
    data = _register(client).json()

    response = client.put(
        "/api/profile",
        headers={"Authorization": f"Bearer {data['tokens']['access_token']}"},
        json={"tenant_id": data["tenant"]["id"], "tone": "concise"},
    )

    assert response.status_code == 200
    assert response.json()["tone"] == "concise"
