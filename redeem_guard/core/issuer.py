"""
License issuance.

Mints one lifetime license key for a verified invoice.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from redeem_guard.clients.licensing import LicensingClient
from redeem_guard.clients.storefront import Invoice
from .errors import IssuanceError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_DAYS = 9999
DEFAULT_KEY_MASK = "******-******-******-******"


def mask_key(license_key: str) -> str:
    """Hide all but the last four characters of a key for logging."""
    if len(license_key) <= 4:
        return "*" * len(license_key)
    return "*" * (len(license_key) - 4) + license_key[-4:]


@dataclass(frozen=True)
class IssueResult:
    """Outcome of one issuance attempt."""
    success: bool
    license_key: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None


class LicenseIssuer:
    """Wraps the licensing authority call.

    The authority knows nothing about invoices; the invoice and requester
    only appear in the key's note. A failed call is reported, never retried,
    since a retry could mint a second key before the first is recorded.
    """

    def __init__(
        self,
        licensing: LicensingClient,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
        key_mask: str = DEFAULT_KEY_MASK,
        level: int = 1
    ):
        self.licensing = licensing
        self.expiry_days = expiry_days
        self.key_mask = key_mask
        self.level = level

    def issue(self, invoice_id: str, requester_id: str, invoice: Invoice) -> IssueResult:
        note = f"invoice:{invoice_id} requester:{requester_id}"
        if invoice.product_name:
            note += f" product:{invoice.product_name}"

        try:
            response = self.licensing.create_license(
                note=note,
                expiry_days=self.expiry_days,
                mask=self.key_mask,
                level=self.level
            )
        except IssuanceError as exc:
            logger.error("License creation failed for invoice %s: %s (%s)", invoice_id, exc.kind, exc)
            return IssueResult(success=False, error_kind=exc.kind)

        if not response.success or not response.license_key:
            kind = response.message or "License creation failed"
            logger.error("Licensing authority refused invoice %s: %s", invoice_id, kind)
            return IssueResult(success=False, raw_response=response.raw, error_kind=kind)

        logger.info("License %s created for invoice %s", mask_key(response.license_key), invoice_id)
        return IssueResult(
            success=True,
            license_key=response.license_key,
            raw_response=response.raw
        )
