"""Pydantic schemas for tenant account routes."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Literal

from pydantic import BaseModel, EmailStr, Field

AUTH_SCHEME_BEARER: Literal["bearer"] = "bearer"


class RegisterTenantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    business_name: str | None = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TenantPayload(BaseModel):
    id: uuid.UUID
    name: str
    email: EmailStr


class TokenEnvelope(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = AUTH_SCHEME_BEARER
    expires_in: int = Field(..., description="Seconds until the access token expires")


class AuthenticatedResponse(BaseModel):
    tenant: TenantPayload
    tokens: TokenEnvelope


class ProfilePayload(BaseModel):
    tenant_id: uuid.UUID
    business_name: str | None = None
    tone: str
    knowledge_base: str | None = None
    updated_at: dt.datetime


class ProfileUpdateRequest(BaseModel):
    tenant_id: uuid.UUID | None = None
    business_name: str | None = Field(default=None, max_length=255)
    tone: Literal["friendly", "professional", "concise", "enthusiastic"] | None = None
    knowledge_base: str | None = Field(default=None, max_length=50_000)
