"""Gateway and access logging setup.

- ``LOG_JSON=true`` switches to one JSON object per line.
- Gateway logs (``gateway.*``) and access logs rotate daily under ``LOG_DIR``.
- The access middleware records method, path, status, latency and client IP.
  It scrubs channel credentials and webhook secrets from headers, query
  strings and optional request bodies.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

from .core.tenant_context import get_current_tenant_id

GATEWAY_LOGGER = "gateway"
ACCESS_LOGGER = "uvicorn.access"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        tenant_id = get_current_tenant_id()
        if tenant_id:
            log_record["tenant_id"] = tenant_id
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "smtp_password",
    "token",
    "access_token",
    "bot_token",
    "verify_token",
    "app_secret",
    "hub.verify_token",
    "x-telegram-bot-api-secret-token",
    "x-hub-signature-256",
}


def _scrub(data: object) -> object:
    """Recursively mask sensitive keys in dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if str(k).lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def _install_access_logging(app: FastAPI) -> None:
    """Log one JSON line per request and echo ``X-Request-Id``."""

    log_request_bodies = os.getenv("LOG_REQUEST_BODIES", "false").lower() == "true"
    skip_paths = {"/api/health", "/api/metrics"}
    access_logger = logging.getLogger(ACCESS_LOGGER)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in skip_paths:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        start = time.time()

        body_content = None
        if log_request_bodies:
            body_bytes = await request.body()
            if body_bytes:
                try:
                    body_content = _scrub(json.loads(body_bytes))
                except ValueError:
                    body_content = body_bytes.decode("utf-8", errors="replace")

        response = await call_next(request)

        client_ip = request.headers.get("X-Forwarded-For")
        if not client_ip and request.client is not None:
            client_ip = request.client.host

        log_data: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "query": _scrub(dict(request.query_params)),
            "status": response.status_code,
            "latency_ms": round((time.time() - start) * 1000, 2),
            "client_ip": client_ip,
            "tenant_id": getattr(request.state, "tenant_id", None),
            "headers": _scrub(dict(request.headers)),
        }
        if body_content is not None:
            log_data["body"] = body_content

        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(log_data, default=str))
        return response


def _rotating_handler(path: str, retention_days: int, rotate_utc: bool) -> logging.Handler:
    return TimedRotatingFileHandler(
        path, when="midnight", backupCount=retention_days, utc=rotate_utc
    )


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise gateway and access loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    gateway_logger = logging.getLogger(GATEWAY_LOGGER)
    if not gateway_logger.handlers:
        handler = _rotating_handler(os.path.join(log_dir, "app.log"), retention_days, rotate_utc)
        handler.setFormatter(formatter)
        gateway_logger.addHandler(handler)
    gateway_logger.setLevel(log_level)

    access_logger = logging.getLogger(ACCESS_LOGGER)
    access_logger.handlers.clear()
    handler = _rotating_handler(os.path.join(log_dir, "access.log"), retention_days, rotate_utc)
    handler.setFormatter(formatter)
    access_logger.addHandler(handler)
    access_logger.setLevel(log_level)

    if app is not None:
        cast(Any, app).logger = gateway_logger
        _install_access_logging(app)


__all__ = ["JsonFormatter", "SENSITIVE_FIELDS", "init_logging"]
