"""
Invoice verification.

Sanitizes invoice ids, looks invoices up on the storefront, and applies the
business rules an invoice must pass before it can be redeemed.

Validation Order (first failing check wins):
1. Payment - paid flag set and status is "paid"
2. Age - created less than ``max_age_days`` before now
3. Amount - present and greater than zero
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from redeem_guard.clients.storefront import Invoice, StorefrontClient
from redeem_guard.storage.models import ProductSnapshot
from .errors import InvalidInputError, LookupErrorKind, RemoteLookupError

logger = logging.getLogger(__name__)

MIN_INVOICE_ID_LENGTH = 5
MAX_INVOICE_ID_LENGTH = 50
DEFAULT_MAX_AGE_DAYS = 30
INVALID_INVOICE = "INVALID"

_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")

LOOKUP_REASONS = {
    LookupErrorKind.NOT_FOUND: "Invoice not found. Please check your invoice ID.",
    LookupErrorKind.AUTH_FAILED: "Authentication failed. Please contact support.",
    LookupErrorKind.ACCESS_DENIED: "Access denied. Please contact support.",
    LookupErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    LookupErrorKind.API_ERROR: "The store could not process this invoice. Please try again later.",
    LookupErrorKind.NETWORK_ERROR: "Unable to verify invoice. Please try again later.",
}

REASON_NOT_PAID = "Invoice is not marked as paid. Please complete your payment first."
REASON_INVALID_AMOUNT = "Invalid invoice amount."
REASON_VALID = "Invoice is valid and can be redeemed."


def reason_too_old(max_age_days: int) -> str:
    return (
        "This invoice is too old to redeem. "
        f"Invoices must be redeemed within {max_age_days} days."
    )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying one invoice."""
    valid: bool
    reason: str
    invoice: Optional[Invoice] = None
    error_kind: Optional[str] = None


def sanitize_invoice_id(raw: object) -> str:
    """Normalize a user-supplied invoice id.

    Trims whitespace, enforces the length bounds on the trimmed value, then
    drops every character outside ``[A-Za-z0-9_-]``.

    Raises:
        InvalidInputError: If the id is not a string, is out of bounds, or
            is empty after stripping
    """
    if not isinstance(raw, str) or not raw:
        raise InvalidInputError("Invalid invoice ID format")

    clean = raw.strip()
    if len(clean) < MIN_INVOICE_ID_LENGTH or len(clean) > MAX_INVOICE_ID_LENGTH:
        raise InvalidInputError(
            f"Invoice ID must be between {MIN_INVOICE_ID_LENGTH} and {MAX_INVOICE_ID_LENGTH} characters"
        )

    clean = _DISALLOWED.sub("", clean)
    if not clean:
        raise InvalidInputError("Invoice ID contains invalid characters")
    return clean


def validate_invoice(
    invoice: Invoice,
    now: datetime,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS
) -> Tuple[bool, str]:
    """Apply the redemption business rules to a fetched invoice.

    Any product from the shop is accepted. An invoice without a parseable
    creation time cannot be shown to be recent and fails the age check.

    Returns:
        (valid, reason)
    """
    if not invoice.paid or invoice.status != "paid":
        return False, REASON_NOT_PAID

    logger.info("Invoice %s is for product %s (ID: %s)", invoice.id, invoice.product_name, invoice.product_id)

    if invoice.created_at is None or now - invoice.created_at >= timedelta(days=max_age_days):
        return False, reason_too_old(max_age_days)

    if invoice.amount is None or not invoice.amount > 0:
        return False, REASON_INVALID_AMOUNT

    return True, REASON_VALID


def snapshot_invoice(invoice: Invoice) -> ProductSnapshot:
    """Extract the facts recorded alongside a redemption."""
    return ProductSnapshot(
        invoice_id=invoice.id,
        product_id=invoice.product_id,
        product_name=invoice.product_name,
        amount=invoice.amount,
        currency=invoice.currency,
        customer_email=invoice.customer_email,
        customer_name=invoice.customer_name,
        status=invoice.status,
        created_at=invoice.created_at,
        paid_at=invoice.paid_at
    )


class InvoiceVerifier:
    """Looks up invoices and decides whether they may be redeemed."""

    def __init__(
        self,
        storefront: StorefrontClient,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storefront = storefront
        self.max_age_days = max_age_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, raw_invoice_id: str) -> VerificationResult:
        """Verify an invoice id end to end.

        Remote failures become an invalid result carrying the lookup kind.
        The age rule is evaluated against the clock on every call.

        Raises:
            InvalidInputError: If the id fails sanitization
        """
        invoice_id = sanitize_invoice_id(raw_invoice_id)
        logger.info("Verifying invoice: %s", invoice_id)

        try:
            invoice = self.storefront.get_invoice(invoice_id)
        except RemoteLookupError as exc:
            logger.warning("Invoice lookup failed for %s: %s (%s)", invoice_id, exc.kind.value, exc)
            return VerificationResult(
                valid=False,
                reason=LOOKUP_REASONS[exc.kind],
                error_kind=exc.kind.value
            )

        valid, reason = validate_invoice(invoice, self._clock(), self.max_age_days)
        logger.info("Invoice verification completed for %s: %s", invoice_id, "VALID" if valid else "INVALID")
        return VerificationResult(
            valid=valid,
            reason=reason,
            invoice=invoice,
            error_kind=None if valid else INVALID_INVOICE
        )
