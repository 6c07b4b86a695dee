"""
Data models for storage layer.

Defines ledger entities and the values returned by ledger operations.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ProductSnapshot:
    """Immutable copy of the verified invoice facts at redemption time."""
    invoice_id: str
    product_id: Optional[str]
    product_name: Optional[str]
    amount: Optional[float]
    currency: Optional[str]
    customer_email: Optional[str]
    customer_name: Optional[str]
    status: Optional[str]
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["paid_at"] = _iso(self.paid_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductSnapshot":
        return cls(
            invoice_id=data["invoice_id"],
            product_id=data.get("product_id"),
            product_name=data.get("product_name"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            customer_email=data.get("customer_email"),
            customer_name=data.get("customer_name"),
            status=data.get("status"),
            created_at=_parse(data.get("created_at")),
            paid_at=_parse(data.get("paid_at")),
        )


@dataclass(frozen=True)
class RequesterMetadata:
    """Who redeemed an invoice and through which channel."""
    requester_id: str
    display_name: Optional[str] = None
    channel: str = "discord_bot"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequesterMetadata":
        return cls(
            requester_id=data["requester_id"],
            display_name=data.get("display_name"),
            channel=data.get("channel", "discord_bot"),
        )


@dataclass(frozen=True)
class RedemptionRecord:
    """One successfully redeemed invoice.

    Written once by the ledger and never updated. ``invoice_id`` is unique
    across all records.
    """
    invoice_id: str
    requester_id: str
    license_key: str
    product: ProductSnapshot
    issuer_response: Dict[str, Any]
    requester: RequesterMetadata
    redeemed_at: datetime


@dataclass(frozen=True)
class KeySummary:
    """Key retrieval view of a redemption."""
    invoice_id: str
    license_key: str
    product_name: Optional[str]
    redeemed_at: datetime


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of an atomic rate-limit check-and-consume."""
    allowed: bool
    attempts_used: int
    max_attempts: int
    reset_at: datetime


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record of a notable action."""
    actor_id: str
    action: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
