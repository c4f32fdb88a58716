"""Tenant ownership guard: route tables and middleware behaviour."""

from __future__ import annotations

import datetime as dt
import uuid

import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from gateway.core.routes import TenantRoute, is_public_route, resolve_target_tenant
from gateway.core.tenant_context import get_current_tenant_id
from gateway.core.tenant_middleware import TenantOwnershipMiddleware


def _token(tenant_id: str, **overrides) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "tenant_id": tenant_id,
        "user_id": tenant_id,
        "iss": "auth.gateway",
        "aud": "channel-gateway",
        "iat": int(now.timestamp()),
        "exp": int((now + dt.timedelta(minutes=5)).timestamp()),
        "type": "access",
    }
    payload.update(overrides)
    return jwt.encode(payload, "super-secret-key", algorithm="HS256")


@pytest.fixture
def guarded_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(TenantOwnershipMiddleware)

    @app.get("/api/tenants/{tenant_id}/channels")
    async def channels(tenant_id: str, request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "tenant_id": request.state.tenant_id,
                "target": request.state.target_tenant_id,
                "context_tenant": get_current_tenant_id(),
            }
        )

    @app.put("/api/profile")
    async def profile(request: Request) -> JSONResponse:
        body = await request.json()
        return JSONResponse({"target": request.state.target_tenant_id, "body": body})

    @app.get("/api/webhooks/whatsapp/{tenant_id}")
    async def webhook(tenant_id: str) -> JSONResponse:
        return JSONResponse({"public": True})

    return app


def test_public_table_matches_templates():
    tenant = str(uuid.uuid4())
    assert is_public_route("GET", "/api/health")
    assert is_public_route("POST", f"/api/webhooks/telegram/{tenant}")
    assert is_public_route("GET", f"/api/webhooks/whatsapp/{tenant}/")
    assert not is_public_route("GET", f"/api/webhooks/telegram/{tenant}")
    assert not is_public_route("POST", "/api/tenant/accounts/register/extra")
    assert not is_public_route("GET", "/api/quota")


def test_path_wins_over_body_field():
    path_tenant, body_tenant = str(uuid.uuid4()), str(uuid.uuid4())

    assert (
        resolve_target_tenant(
            "POST", f"/api/tenants/{path_tenant}/channels/bot", {"tenant_id": body_tenant}
        )
        == path_tenant
    )
    assert resolve_target_tenant("PUT", "/api/profile", {"tenant_id": body_tenant}) == body_tenant
    assert resolve_target_tenant("PUT", "/api/profile", {"tenant_id": ""}) is None
    assert resolve_target_tenant("GET", "/api/quota") is None


def test_tenant_route_requires_the_named_placeholder():
    with pytest.raises(ValueError):
        TenantRoute("GET", "/api/things/{thing_id}")


def test_tenant_namespace_is_covered_without_a_table_entry():
    tenant = str(uuid.uuid4())

    assert resolve_target_tenant("GET", f"/api/tenants/{tenant}") == tenant
    assert resolve_target_tenant("DELETE", f"/api/tenants/{tenant}/notes/7/attachments") == tenant
    assert resolve_target_tenant("GET", f"/api/tenantsx/{tenant}/notes") is None


def test_unlisted_tenant_route_is_still_guarded(guarded_app):
    @guarded_app.get("/api/tenants/{tenant_id}/notes/{note_id}")
    async def note(tenant_id: str, note_id: str) -> JSONResponse:
        return JSONResponse({"tenant_id": tenant_id, "note_id": note_id})

    tenant, other = str(uuid.uuid4()), str(uuid.uuid4())
    client = TestClient(guarded_app)
    headers = {"Authorization": f"Bearer {_token(tenant)}"}

    assert client.get(f"/api/tenants/{tenant}/notes/1", headers=headers).status_code == 200
    assert client.get(f"/api/tenants/{other}/notes/1", headers=headers).status_code == 403


def test_missing_token_is_unauthorized(guarded_app):
    client = TestClient(guarded_app)

    response = client.get(f"/api/tenants/{uuid.uuid4()}/channels")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_expired_token_is_unauthorized(guarded_app):
    tenant = str(uuid.uuid4())
    expired = _token(tenant, exp=int(dt.datetime(2020, 1, 1, tzinfo=dt.timezone.utc).timestamp()))
    client = TestClient(guarded_app)

    response = client.get(
        f"/api/tenants/{tenant}/channels", headers={"Authorization": f"Bearer {expired}"}
    )

    assert response.status_code == 401
    assert response.json()["detail"] == "Tenant token has expired."


def test_own_tenant_passes_and_context_is_set(guarded_app):
    tenant = str(uuid.uuid4())
    client = TestClient(guarded_app)

    response = client.get(
        f"/api/tenants/{tenant}/channels", headers={"Authorization": f"Bearer {_token(tenant)}"}
    )

    assert response.status_code == 200
    assert response.json() == {"tenant_id": tenant, "target": tenant, "context_tenant": tenant}
    assert get_current_tenant_id() is None


def test_other_tenant_in_path_is_forbidden(guarded_app):
    tenant, other = str(uuid.uuid4()), str(uuid.uuid4())
    client = TestClient(guarded_app)

    response = client.get(
        f"/api/tenants/{other}/channels", headers={"Authorization": f"Bearer {_token(tenant)}"}
    )

    assert response.status_code == 403
    assert response.json() == {"detail": "Access denied for the requested tenant."}


def test_other_tenant_in_body_is_forbidden(guarded_app):
    tenant, other = str(uuid.uuid4()), str(uuid.uuid4())
    client = TestClient(guarded_app)
    headers = {"Authorization": f"Bearer {_token(tenant)}"}

    denied = client.put("/api/profile", json={"tenant_id": other, "tone": "concise"}, headers=headers)
    implicit = client.put("/api/profile", json={"tone": "concise"}, headers=headers)

    assert denied.status_code == 403
    assert implicit.status_code == 200
    # The handler can still read the body the guard inspected.
    assert implicit.json() == {"target": tenant, "body": {"tone": "concise"}}


def test_public_routes_skip_authentication(guarded_app):
    client = TestClient(guarded_app)

    response = client.get(f"/api/webhooks/whatsapp/{uuid.uuid4()}")

    assert response.status_code == 200


def test_missing_token_configuration_is_a_server_error(guarded_app, monkeypatch):
    from gateway.security import reset_jwt_settings_cache

    monkeypatch.delenv("TENANT_TOKEN_SECRET")
    reset_jwt_settings_cache()
    client = TestClient(guarded_app)

    response = client.get(
        f"/api/tenants/{uuid.uuid4()}/channels", headers={"Authorization": "Bearer abc.def.ghi"}
    )

    assert response.status_code == 500
