"""Shared SlowAPI limiter for the account routes."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter


def get_client_ip(request: Request) -> str:
    """Key requests by the first ``X-Forwarded-For`` hop, else the peer address."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client is None:
        return "unknown"
    return request.client.host


limiter = Limiter(key_func=get_client_ip)

__all__ = ["get_client_ip", "limiter"]
