"""
Storage layer for Redeem Guard.

Durable record of redemptions, rate-limit counters and the audit trail.
"""

from .ledger import Ledger, initialize_schema
from .models import (
    AuditEntry,
    KeySummary,
    ProductSnapshot,
    RateLimitDecision,
    RedemptionRecord,
    RequesterMetadata,
)

__all__ = [
    "AuditEntry",
    "KeySummary",
    "Ledger",
    "ProductSnapshot",
    "RateLimitDecision",
    "RedemptionRecord",
    "RequesterMetadata",
    "initialize_schema",
]
