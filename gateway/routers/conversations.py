"""Conversation history and manual agent replies for the dashboard."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..conversations import schemas as convo_schemas
from ..services import GatewayServices, get_services

router = APIRouter(tags=["conversations"])

ServicesDep = Annotated[GatewayServices, Depends(get_services)]


@router.get(
    "/api/tenants/{tenant_id}/conversations",
    response_model=convo_schemas.ConversationList,
)
def list_conversations(
    tenant_id: UUID,
    services: ServicesDep,
    channel_type: str | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> convo_schemas.ConversationList:
    try:
        return services.conversations.list_conversations(tenant_id, channel_type, limit)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown channel type '{channel_type}'",
        ) from exc


@router.get(
    "/api/tenants/{tenant_id}/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
def get_conversation(
    tenant_id: UUID, conversation_id: UUID, services: ServicesDep
) -> convo_schemas.ConversationDetail:
    return services.conversations.get_conversation(tenant_id, conversation_id)


@router.post(
    "/api/tenants/{tenant_id}/conversations/{conversation_id}/messages",
    response_model=convo_schemas.ManualMessageResponse,
)
async def send_manual_message(
    tenant_id: UUID,
    conversation_id: UUID,
    payload: convo_schemas.ManualMessageRequest,
    services: ServicesDep,
) -> convo_schemas.ManualMessageResponse:
    """Send an operator-written reply over the conversation's channel.

    Email replies thread onto the last customer message and count against
    the shared sender quota like automated ones.
    """

    conversation = services.conversations.get_conversation(tenant_id, conversation_id)
    driver = services.registry.get_driver(conversation.channel_type)
    last = services.conversations.last_customer_message(conversation)
    thread = dict(last.metadata) if last is not None else {}
    reference = await driver.send_text(
        tenant_id, conversation.participant_key, payload.text, thread=thread
    )
    message = services.conversations.record_outbound(
        tenant_id,
        conversation_id,
        payload.text,
        channel_ref=reference,
        metadata={"manual": True},
    )
    return convo_schemas.ManualMessageResponse(conversation_id=conversation_id, message=message)
