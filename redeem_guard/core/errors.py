"""
Error taxonomy for the redemption workflow.

Every failure raised below the orchestrator is one of these types.
"""

from enum import Enum
from typing import Optional


class LookupErrorKind(Enum):
    """Storefront lookup failure kinds, none retryable by the core."""
    NOT_FOUND = "NOT_FOUND"
    AUTH_FAILED = "AUTH_FAILED"
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class RedeemGuardError(Exception):
    """Base class for all redemption errors."""


class InvalidInputError(RedeemGuardError):
    """Raised when an invoice id fails format validation."""


class RemoteLookupError(RedeemGuardError):
    """Raised when the storefront lookup fails."""

    def __init__(self, kind: LookupErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class IssuanceError(RedeemGuardError):
    """Raised when the licensing authority cannot mint a key.

    ``kind`` is forwarded from the collaborator and shown to the user as-is.
    """

    def __init__(self, kind: str, message: Optional[str] = None):
        super().__init__(message or kind)
        self.kind = kind


class StorageError(RedeemGuardError):
    """Raised on ledger infrastructure faults."""


class DuplicateInvoiceError(StorageError):
    """Raised when an invoice id is already present in the ledger."""

    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} has already been redeemed")
        self.invoice_id = invoice_id


class UnexpectedError(RedeemGuardError):
    """Wraps any failure not covered by the other types."""
