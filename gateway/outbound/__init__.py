"""Outbound volume controls."""

from .quota import (
    InMemoryQuotaCounter,
    OutboundQuotaManager,
    QuotaCounter,
    QuotaDecision,
    SqlQuotaCounter,
)

__all__ = [
    "InMemoryQuotaCounter",
    "OutboundQuotaManager",
    "QuotaCounter",
    "QuotaDecision",
    "SqlQuotaCounter",
]
