"""Tenant account registration, login and business profile routes."""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..errors import TenantNotFound
from ..models import Tenant
from ..rate_limit import limiter
from ..security import create_access_token, get_jwt_settings
from ..services import GatewayServices, get_services
from ..tenants import EmailAlreadyRegistered
from ..tenants.schemas import (
    AuthenticatedResponse,
    LoginRequest,
    ProfilePayload,
    ProfileUpdateRequest,
    RegisterTenantRequest,
    TenantPayload,
    TokenEnvelope,
)

router = APIRouter(tags=["tenant-accounts"])

ServicesDep = Annotated[GatewayServices, Depends(get_services)]


def _authenticated_response(tenant: Tenant) -> AuthenticatedResponse:
    token, _ = create_access_token(tenant)
    return AuthenticatedResponse(
        tenant=TenantPayload(id=tenant.id, name=tenant.name, email=tenant.email),
        tokens=TokenEnvelope(
            access_token=token,
            expires_in=get_jwt_settings().access_token_ttl_seconds,
        ),
    )


def _profile_payload(tenant: Tenant) -> ProfilePayload:
    return ProfilePayload(
        tenant_id=tenant.id,
        business_name=tenant.business_name,
        tone=tenant.tone or "friendly",
        knowledge_base=tenant.knowledge_base,
        updated_at=tenant.updated_at,
    )


def _request_tenant(request: Request) -> uuid.UUID:
    return uuid.UUID(str(request.state.target_tenant_id))


@router.post(
    "/api/tenant/accounts/register",
    response_model=AuthenticatedResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("5/minute")
def register(
    request: Request, payload: RegisterTenantRequest, services: ServicesDep
) -> AuthenticatedResponse:
    try:
        tenant = services.tenants.register(
            name=payload.name,
            email=str(payload.email),
            password=payload.password,
            business_name=payload.business_name,
        )
    except EmailAlreadyRegistered as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _authenticated_response(tenant)


@router.post("/api/tenant/accounts/login", response_model=AuthenticatedResponse)
@limiter.limit("5/minute")
def login(
    request: Request, payload: LoginRequest, services: ServicesDep
) -> AuthenticatedResponse:
    tenant = services.tenants.authenticate(str(payload.email), payload.password)
    if tenant is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _authenticated_response(tenant)


@router.get("/api/profile", response_model=ProfilePayload)
def get_profile(request: Request, services: ServicesDep) -> ProfilePayload:
    return _profile_payload(services.tenants.get(_request_tenant(request)))


@router.put("/api/profile", response_model=ProfilePayload)
def update_profile(
    request: Request, payload: ProfileUpdateRequest, services: ServicesDep
) -> ProfilePayload:
    # A body tenant_id other than the caller's was already refused with 403.
    changes = payload.model_dump(exclude_unset=True, exclude={"tenant_id"})
    if "tone" in changes and changes["tone"] is None:
        del changes["tone"]
    try:
        tenant = services.tenants.update_profile(_request_tenant(request), **changes)
    except TenantNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _profile_payload(tenant)
