"""Provider callback routes for the bot and business messaging channels.

These routes are public in the ownership guard; the tenant comes from the
path and authenticity from each provider's own secret. Providers retry
anything but a success status, so only the WhatsApp verification handshake
ever answers with an error.
"""

import asyncio
import json
import logging
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.responses import PlainTextResponse, Response

from ..channels.telegram import SECRET_HEADER
from ..channels.whatsapp import SIGNATURE_HEADER
from ..services import GatewayServices, get_services

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)

ServicesDep = Annotated[GatewayServices, Depends(get_services)]

_ACK = {"ok": True}


def _parse_tenant(raw: str) -> UUID | None:
    try:
        return UUID(raw)
    except ValueError:
        return None


def _parse_json(body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(body) if body else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/api/webhooks/telegram/{tenant_id}")
async def telegram_update(tenant_id: str, request: Request, services: ServicesDep) -> dict[str, bool]:
    """Handle one bot update and always acknowledge it."""

    tenant = _parse_tenant(tenant_id)
    update = _parse_json(await request.body())
    if tenant is None or update is None:
        logger.warning("Discarding malformed Telegram update for %s", tenant_id)
        return _ACK
    try:
        outcome = await asyncio.to_thread(
            services.telegram.handle_update,
            tenant,
            update,
            request.headers.get(SECRET_HEADER),
        )
    except Exception:
        logger.exception("Telegram update %s for tenant %s failed", update.get("update_id"), tenant)
        return _ACK
    logger.debug("Telegram update for tenant %s: %s", tenant, outcome.value)
    return _ACK


@router.get("/api/webhooks/whatsapp/{tenant_id}")
def whatsapp_verify(
    tenant_id: str,
    services: ServicesDep,
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> Response:
    """Echo ``hub.challenge`` when the verify token matches, else 403."""

    tenant = _parse_tenant(tenant_id)
    echoed = services.whatsapp.verify(tenant, mode, token, challenge) if tenant else None
    if echoed is None:
        return PlainTextResponse("Verification failed", status_code=status.HTTP_403_FORBIDDEN)
    return PlainTextResponse(echoed)


@router.post("/api/webhooks/whatsapp/{tenant_id}")
async def whatsapp_delivery(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    services: ServicesDep,
) -> dict[str, str]:
    """Acknowledge a delivery at once and process it after the response."""

    body = await request.body()
    tenant = _parse_tenant(tenant_id)
    payload = _parse_json(body)
    if tenant is None or payload is None:
        logger.warning("Discarding malformed WhatsApp delivery for %s", tenant_id)
        return {"status": "ignored"}
    valid = await asyncio.to_thread(
        services.whatsapp.verify_signature, tenant, body, request.headers.get(SIGNATURE_HEADER)
    )
    if not valid:
        logger.warning("Discarding WhatsApp delivery with bad signature for tenant %s", tenant)
        return {"status": "ignored"}
    background_tasks.add_task(services.whatsapp.handle_delivery, tenant, payload)
    return {"status": "accepted"}
