"""
Redemption workflow.

Sequences the checks that turn one invoice into one license key.

Stage Order (every stage can end the attempt):
1. Rate limit - consumes one attempt from the requester's window
2. Duplicate check - fast rejection of invoices already in the ledger
3. Verification - storefront lookup plus business rules
4. Issuance - licensing authority mints a key
5. Recording - ledger insert; the invoice uniqueness constraint is final

No exception crosses ``RedemptionOrchestrator.redeem``; every failure is
turned into a ``RedemptionOutcome``.
"""

import logging
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from redeem_guard.storage.ledger import Ledger
from redeem_guard.storage.models import ProductSnapshot, RequesterMetadata
from .errors import DuplicateInvoiceError, InvalidInputError, StorageError, UnexpectedError
from .issuer import LicenseIssuer, mask_key
from .verifier import InvoiceVerifier, sanitize_invoice_id, snapshot_invoice

logger = logging.getLogger(__name__)

REDEEM_ACTION = "redeem"

REASON_ALREADY_REDEEMED = "This invoice has already been used to redeem a license key."
REASON_STORAGE = "The license service is temporarily unavailable. Please try again later."
REASON_UNEXPECTED = (
    "An unexpected error occurred while processing your redemption. "
    "Please try again later or contact support if the problem persists."
)
REASON_SUCCESS = "Your license key has been generated. Save it somewhere safe."


class RedemptionState(Enum):
    """Workflow stages, in order."""
    START = "start"
    RATE_LIMIT_CHECK = "rate_limit_check"
    DUPLICATE_CHECK = "duplicate_check"
    VERIFYING = "verifying"
    ISSUING = "issuing"
    RECORDING = "recording"
    DONE = "done"


class OutcomeKind(Enum):
    """Closed set of results a caller must be able to render."""
    SUCCESS = "SUCCESS"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    ISSUANCE_FAILED = "ISSUANCE_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


@dataclass(frozen=True)
class RedemptionOutcome:
    """Result of one ``redeem`` call, safe to show to the requester."""
    kind: OutcomeKind
    reason: str
    invoice_id: Optional[str] = None
    license_key: Optional[str] = None
    product: Optional[ProductSnapshot] = None
    error_kind: Optional[str] = None
    attempts_used: Optional[int] = None
    max_attempts: Optional[int] = None
    reset_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass
class RedemptionAttempt:
    """Mutable progress of one attempt, used for logging and auditing."""
    requester_id: str
    raw_invoice_id: str
    requester: RequesterMetadata
    invoice_id: Optional[str] = None
    state: RedemptionState = RedemptionState.START


class RedemptionOrchestrator:
    """Runs the redemption state machine against injected collaborators.

    No lock spans the workflow. Concurrent attempts for the same invoice can
    both pass the duplicate check; the loser fails at recording and its
    freshly minted key is reported as orphaned.
    """

    def __init__(
        self,
        ledger: Ledger,
        verifier: InvoiceVerifier,
        issuer: LicenseIssuer,
        max_attempts: int = 1,
        window_hours: float = 24,
        action: str = REDEEM_ACTION
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if window_hours <= 0:
            raise ValueError("window_hours must be > 0")

        self.ledger = ledger
        self.verifier = verifier
        self.issuer = issuer
        self.max_attempts = max_attempts
        self.window_hours = window_hours
        self.action = action

    def redeem(
        self,
        requester_id: str,
        invoice_id_raw: str,
        display_name: Optional[str] = None,
        channel: str = "discord_bot"
    ) -> RedemptionOutcome:
        """Exchange an invoice for a license key.

        Args:
            requester_id: Identity of the user redeeming
            invoice_id_raw: Invoice id exactly as the user typed it
            display_name: Optional name recorded with the redemption
            channel: Where the request came from

        Returns:
            RedemptionOutcome; never raises
        """
        attempt = RedemptionAttempt(
            requester_id=requester_id,
            raw_invoice_id=invoice_id_raw,
            requester=RequesterMetadata(
                requester_id=requester_id,
                display_name=display_name,
                channel=channel
            )
        )
        logger.info("Redemption attempt: invoice %r by %s (%s)", invoice_id_raw, display_name, requester_id)
        self._audit(attempt, "redeem_command", {"invoice_id": invoice_id_raw, "channel": channel})

        try:
            return self._run(attempt)
        except StorageError as exc:
            logger.error("Storage failure during %s for invoice %r: %s", attempt.state.value, invoice_id_raw, exc)
            self._audit(attempt, "redemption_error", {
                "invoice_id": attempt.invoice_id or invoice_id_raw,
                "stage": attempt.state.value,
                "error_type": type(exc).__name__,
                "error": str(exc),
            })
            return RedemptionOutcome(
                kind=OutcomeKind.STORAGE_ERROR,
                reason=REASON_STORAGE,
                invoice_id=attempt.invoice_id
            )
        except Exception as exc:
            error = UnexpectedError(f"{type(exc).__name__}: {exc}")
            logger.exception(
                "Redemption error for invoice %r by %s", invoice_id_raw, requester_id,
                extra={"context": {"stage": attempt.state.value, "requester_id": requester_id}}
            )
            self._audit(attempt, "redemption_error", {
                "invoice_id": attempt.invoice_id or invoice_id_raw,
                "stage": attempt.state.value,
                "error": str(error),
                "stack": traceback.format_exc(),
            })
            return RedemptionOutcome(
                kind=OutcomeKind.UNEXPECTED_ERROR,
                reason=REASON_UNEXPECTED,
                invoice_id=attempt.invoice_id
            )

    def _run(self, attempt: RedemptionAttempt) -> RedemptionOutcome:
        # 1. Rate limit
        attempt.state = RedemptionState.RATE_LIMIT_CHECK
        decision = self.ledger.check_and_consume_rate_limit(
            attempt.requester_id, self.action, self.max_attempts, self.window_hours
        )
        if not decision.allowed:
            self._audit(attempt, "redemption_rate_limited", {
                "invoice_id": attempt.raw_invoice_id,
                "attempts": decision.attempts_used,
                "max_attempts": decision.max_attempts,
                "reset_at": decision.reset_at.isoformat(),
            })
            return RedemptionOutcome(
                kind=OutcomeKind.RATE_LIMITED,
                reason=(
                    f"You have reached the limit of {decision.max_attempts} redemption "
                    f"attempt(s). You can try again after {decision.reset_at:%Y-%m-%d %H:%M} UTC."
                ),
                attempts_used=decision.attempts_used,
                max_attempts=decision.max_attempts,
                reset_at=decision.reset_at
            )

        try:
            attempt.invoice_id = sanitize_invoice_id(attempt.raw_invoice_id)
        except InvalidInputError as exc:
            return self._invalid_input(attempt, exc)

        # 2. Duplicate check
        attempt.state = RedemptionState.DUPLICATE_CHECK
        if self.ledger.is_redeemed(attempt.invoice_id):
            self._audit(attempt, "redemption_failed", {
                "invoice_id": attempt.invoice_id,
                "reason": "already_redeemed",
            })
            return self._already_redeemed(attempt)

        # 3. Verification
        attempt.state = RedemptionState.VERIFYING
        try:
            verification = self.verifier.verify(attempt.raw_invoice_id)
        except InvalidInputError as exc:
            return self._invalid_input(attempt, exc)

        if not verification.valid:
            self._audit(attempt, "redemption_failed", {
                "invoice_id": attempt.invoice_id,
                "reason": verification.reason,
                "error": verification.error_kind,
            })
            return RedemptionOutcome(
                kind=OutcomeKind.VERIFICATION_FAILED,
                reason=verification.reason,
                invoice_id=attempt.invoice_id,
                error_kind=verification.error_kind
            )
        invoice = verification.invoice

        # 4. Issuance - a failure here leaves the invoice redeemable
        attempt.state = RedemptionState.ISSUING
        issued = self.issuer.issue(attempt.invoice_id, attempt.requester_id, invoice)
        if not issued.success:
            self._audit(attempt, "license_creation_failed", {
                "invoice_id": attempt.invoice_id,
                "error": issued.error_kind,
            })
            return RedemptionOutcome(
                kind=OutcomeKind.ISSUANCE_FAILED,
                reason=(
                    "Your invoice was verified, but the license key could not be created "
                    f"({issued.error_kind}). The invoice has not been used; "
                    "please try again later or contact support with your invoice ID."
                ),
                invoice_id=attempt.invoice_id,
                error_kind=issued.error_kind
            )

        # 5. Recording
        attempt.state = RedemptionState.RECORDING
        product = snapshot_invoice(invoice)
        try:
            self.ledger.record_redemption(
                invoice_id=attempt.invoice_id,
                requester_id=attempt.requester_id,
                license_key=issued.license_key,
                product=product,
                issuer_response=issued.raw_response,
                requester=attempt.requester
            )
        except DuplicateInvoiceError:
            self._report_orphan(attempt, issued.license_key, "lost race against a concurrent redemption")
            return self._already_redeemed(attempt)
        except StorageError as exc:
            self._report_orphan(attempt, issued.license_key, f"ledger write failed: {exc}")
            raise

        attempt.state = RedemptionState.DONE
        self._audit(attempt, "redemption_success", {
            "invoice_id": attempt.invoice_id,
            "license_key": mask_key(issued.license_key),
            "product_name": product.product_name,
            "amount": product.amount,
        })
        logger.info(
            "Redemption successful: invoice %s -> license %s for %s",
            attempt.invoice_id, mask_key(issued.license_key), attempt.requester_id,
            extra={"context": {
                "invoice_id": attempt.invoice_id,
                "requester_id": attempt.requester_id,
                "outcome": OutcomeKind.SUCCESS.value,
            }}
        )
        return RedemptionOutcome(
            kind=OutcomeKind.SUCCESS,
            reason=REASON_SUCCESS,
            invoice_id=attempt.invoice_id,
            license_key=issued.license_key,
            product=product
        )

    def _invalid_input(self, attempt: RedemptionAttempt, exc: InvalidInputError) -> RedemptionOutcome:
        self._audit(attempt, "redemption_failed", {
            "invoice_id": attempt.raw_invoice_id,
            "reason": str(exc),
            "error": OutcomeKind.INVALID_INPUT.value,
        })
        return RedemptionOutcome(
            kind=OutcomeKind.INVALID_INPUT,
            reason=str(exc),
            error_kind=OutcomeKind.INVALID_INPUT.value
        )

    @staticmethod
    def _already_redeemed(attempt: RedemptionAttempt) -> RedemptionOutcome:
        return RedemptionOutcome(
            kind=OutcomeKind.ALREADY_REDEEMED,
            reason=REASON_ALREADY_REDEEMED,
            invoice_id=attempt.invoice_id
        )

    def _report_orphan(self, attempt: RedemptionAttempt, license_key: str, cause: str) -> None:
        # Issued but not attributable; left for manual reconciliation, not revoked.
        logger.critical(
            "ORPHANED LICENSE KEY %s for invoice %s (requester %s): %s",
            mask_key(license_key), attempt.invoice_id, attempt.requester_id, cause,
            extra={"context": {
                "invoice_id": attempt.invoice_id,
                "requester_id": attempt.requester_id,
                "license_key_masked": mask_key(license_key),
            }}
        )
        self._audit(attempt, "license_orphaned", {
            "invoice_id": attempt.invoice_id,
            "license_key": license_key,
            "cause": cause,
        })

    def _audit(self, attempt: RedemptionAttempt, action: str, details: dict) -> None:
        try:
            self.ledger.record_audit(attempt.requester_id, action, details)
        except Exception:
            logger.exception("Audit write %s discarded", action)
