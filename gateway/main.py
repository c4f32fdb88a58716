"""FastAPI application wiring for the channel gateway.

- Configures logging, rate limiting, Prometheus metrics and the tenant
  ownership guard.
- Mounts the account, channel, conversation and webhook routers.
- Translates gateway domain errors into HTTP responses.

Services (database, vault, drivers) are created on first use unless a
prebuilt :class:`~gateway.services.GatewayServices` is handed to
:func:`create_app`.
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import ValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.tenant_middleware import TenantOwnershipMiddleware
from .errors import (
    AccessDenied,
    ChannelConnectionError,
    ChannelNotConnected,
    ConversationNotFound,
    DecryptionError,
    DispatchFailure,
    QuotaExceeded,
    TenantNotFound,
)
from .rate_limit import limiter
from .routers import channels, conversations, tenant_accounts, webhooks
from .services import GatewayServices

load_dotenv()

logger = logging.getLogger(__name__)


def _error(status_code: int, detail: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


async def _access_denied(request: Request, exc: AccessDenied) -> JSONResponse:
    return _error(status.HTTP_403_FORBIDDEN, str(exc) or "Access denied for the requested tenant.")


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


async def _connection_error(request: Request, exc: ChannelConnectionError) -> JSONResponse:
    logger.warning("Channel connection failed on %s: %s", request.url.path, exc)
    return _error(status.HTTP_502_BAD_GATEWAY, str(exc))


async def _dispatch_failure(request: Request, exc: DispatchFailure) -> JSONResponse:
    logger.error("Outbound send failed on %s: %s", request.url.path, exc)
    return _error(status.HTTP_502_BAD_GATEWAY, str(exc))


async def _decryption_error(request: Request, exc: DecryptionError) -> JSONResponse:
    return _error(
        status.HTTP_409_CONFLICT,
        "Stored channel credentials cannot be read; reconnect required.",
    )


async def _quota_exceeded(request: Request, exc: QuotaExceeded) -> JSONResponse:
    decision = exc.decision
    return _error(
        status.HTTP_429_TOO_MANY_REQUESTS,
        str(exc),
        remaining=0,
        limit=decision.limit,
        resets_at=decision.resets_at.isoformat(),
    )


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    # Inputs are left out: channel configs carry secrets.
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(errors)},
    )


def create_app(services: GatewayServices | None = None) -> FastAPI:
    """Build the gateway application."""

    app = FastAPI(title="Channel Gateway", version=__version__)
    if services is not None:
        app.state.services = services

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(AccessDenied, _access_denied)
    app.add_exception_handler(ChannelNotConnected, _not_found)
    app.add_exception_handler(TenantNotFound, _not_found)
    app.add_exception_handler(ConversationNotFound, _not_found)
    app.add_exception_handler(ChannelConnectionError, _connection_error)
    app.add_exception_handler(DispatchFailure, _dispatch_failure)
    app.add_exception_handler(DecryptionError, _decryption_error)
    app.add_exception_handler(QuotaExceeded, _quota_exceeded)
    app.add_exception_handler(ValidationError, _validation_error)

    # Last added runs first: access log, then rate limit, then ownership.
    app.add_middleware(TenantOwnershipMiddleware)
    app.add_middleware(SlowAPIMiddleware)
    init_logging(app)

    app.include_router(tenant_accounts.router)
    app.include_router(channels.router)
    app.include_router(conversations.router)
    app.include_router(webhooks.router)

    @app.get("/api/health")
    async def health():
        """Liveness probe used by load balancers."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the gateway."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
