"""Pydantic schemas for channel connection requests and status reads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class EmailChannelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    address: EmailStr
    imap_host: str = Field(min_length=1)
    imap_port: int = Field(default=993, ge=1, le=65535)
    username: str | None = None
    password: str = Field(min_length=1)
    display_name: str | None = None
    use_shared_sender: bool = False
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None


class BotChannelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bot_token: str = Field(min_length=10)


class BusinessMessagingChannelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phone_number_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    verify_token: str = Field(min_length=8)
    app_secret: str | None = None
    business_account_id: str | None = None
    auto_reply: bool = True


class ChannelConnectRequest(BaseModel):
    config: dict[str, Any]


class TenantChannelStatus(BaseModel):
    """Read model of a channel connection; never carries secrets."""

    channel_type: str
    connected: bool
    identity: str | None = None
    last_activity_at: datetime | None = None
    endpoint: dict[str, Any] = Field(default_factory=dict)


class ChannelStatusList(BaseModel):
    items: list[TenantChannelStatus]
