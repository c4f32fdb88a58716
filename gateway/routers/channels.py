"""Dashboard routes for connecting and inspecting tenant channels.

Ownership of ``{tenant_id}`` is enforced by ``TenantOwnershipMiddleware``
before any handler here runs. Domain errors raised by the registry and the
drivers are translated by the handlers installed in :mod:`gateway.main`.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from ..channels.schemas import ChannelConnectRequest, ChannelStatusList, TenantChannelStatus
from ..conversations.models import ChannelType
from ..services import GatewayServices, get_services

router = APIRouter(tags=["channels"])

ServicesDep = Annotated[GatewayServices, Depends(get_services)]


def _channel_type(value: str) -> ChannelType:
    try:
        return ChannelType(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Channel '{value}' is not supported",
        ) from exc


@router.get("/api/tenants/{tenant_id}/channels", response_model=ChannelStatusList)
def list_channels(tenant_id: UUID, services: ServicesDep) -> ChannelStatusList:
    return ChannelStatusList(items=services.registry.list_status(tenant_id))


@router.post("/api/tenants/{tenant_id}/channels/email/poll")
async def poll_email(tenant_id: UUID, services: ServicesDep) -> dict[str, Any]:
    """Run one mailbox cycle now instead of waiting for the scheduler."""

    result = await services.email.poll(tenant_id)
    return result.as_dict()


@router.get(
    "/api/tenants/{tenant_id}/channels/{channel_type}",
    response_model=TenantChannelStatus,
)
def get_channel(tenant_id: UUID, channel_type: str, services: ServicesDep) -> TenantChannelStatus:
    return services.registry.status(tenant_id, _channel_type(channel_type))


@router.post(
    "/api/tenants/{tenant_id}/channels/{channel_type}",
    response_model=TenantChannelStatus,
)
async def connect_channel(
    tenant_id: UUID,
    channel_type: str,
    payload: ChannelConnectRequest,
    services: ServicesDep,
) -> TenantChannelStatus:
    """Validate, probe and store a channel; nothing is saved if the probe fails."""

    kind = _channel_type(channel_type)
    return await services.registry.connect(tenant_id, kind, payload.config)


@router.delete(
    "/api/tenants/{tenant_id}/channels/{channel_type}",
    response_model=TenantChannelStatus,
)
async def disconnect_channel(
    tenant_id: UUID, channel_type: str, services: ServicesDep
) -> TenantChannelStatus:
    return await services.registry.disconnect(tenant_id, _channel_type(channel_type))


@router.get("/api/quota")
def shared_sender_quota(services: ServicesDep) -> dict[str, Any]:
    """Today's usage of the shared sender, without consuming a send."""

    decision = services.quota.status()
    return {"sender": services.quota.sender_key, **decision.as_dict()}
