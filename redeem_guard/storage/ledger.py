"""
Redemption ledger.

Owns every write to the redemption, rate-limit and audit tables.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from redeem_guard.core.errors import DuplicateInvoiceError, StorageError
from .db import get_connection
from .models import (
    AuditEntry,
    ProductSnapshot,
    RateLimitDecision,
    RedemptionRecord,
    RequesterMetadata,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def initialize_schema(db_path: str = "redeem_guard.db", timeout: float = 5.0) -> None:
    """Create the ledger tables if they don't exist.

    ``redeemed_invoices`` and ``audit_log`` are append-only. ``rate_limits``
    holds one row per (requester, action) that is overwritten in place.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing lock
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS redeemed_invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_id TEXT NOT NULL UNIQUE,
                requester_id TEXT NOT NULL,
                requester_name TEXT,
                license_key TEXT NOT NULL,
                product_id TEXT,
                product_name TEXT,
                amount REAL,
                currency TEXT,
                customer_email TEXT,
                redeemed_at TEXT NOT NULL,
                product_snapshot TEXT NOT NULL,
                issuer_response TEXT,
                requester_metadata TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_redeemed_invoices_requester
                ON redeemed_invoices (requester_id);

            CREATE TABLE IF NOT EXISTS rate_limits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                requester_id TEXT NOT NULL,
                action TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                window_start TEXT NOT NULL,
                last_attempt TEXT NOT NULL,
                reset_after TEXT NOT NULL,
                UNIQUE (requester_id, action)
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_id TEXT NOT NULL,
                action TEXT NOT NULL,
                details TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_log_actor ON audit_log (actor_id);
            CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log (timestamp);
        """)
        conn.commit()
    finally:
        conn.close()


class Ledger:
    """Persistent store access layer for redemptions.

    Every public operation opens its own connection, so one ledger instance
    can be shared by concurrent redemption tasks. Atomicity comes from SQLite:
    the invoice uniqueness constraint and a write-locked transaction around
    each rate-limit update.
    """

    def __init__(
        self,
        db_path: str = "redeem_guard.db",
        timeout: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a lock held by another writer
            clock: Source of the current UTC time (defaults to the system clock)
        """
        self.db_path = db_path
        self.timeout = timeout
        self._clock = clock or utc_now
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> "Ledger":
        """Create the schema and mark the ledger ready for use."""
        try:
            initialize_schema(self.db_path, self.timeout)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Cannot initialize ledger at {self.db_path}: {exc}") from exc
        self._opened = True
        logger.info("Ledger opened at %s", self.db_path)
        return self

    def close(self) -> None:
        if self._opened:
            self._opened = False
            logger.info("Ledger closed")

    def __enter__(self) -> "Ledger":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if not self._opened:
            raise StorageError("Ledger is not open")
        try:
            conn = get_connection(self.db_path, self.timeout)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Cannot connect to ledger: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(f"Ledger operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        """Return True if the ledger answers a trivial query."""
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StorageError as exc:
            logger.error("Ledger connectivity check failed: %s", exc)
            return False

    def is_redeemed(self, invoice_id: str) -> bool:
        """Check whether an invoice has already been redeemed.

        Raises:
            StorageError: If the ledger cannot be read
        """
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM redeemed_invoices WHERE invoice_id = ?",
                (invoice_id,)
            ).fetchone()
        return row is not None

    def record_redemption(
        self,
        invoice_id: str,
        requester_id: str,
        license_key: str,
        product: ProductSnapshot,
        issuer_response: Dict[str, Any],
        requester: RequesterMetadata
    ) -> RedemptionRecord:
        """Insert a redemption record.

        The unique constraint on ``invoice_id`` is the authoritative duplicate
        guard: of two concurrent inserts for the same invoice, exactly one
        succeeds.

        Args:
            invoice_id: Sanitized invoice identifier
            requester_id: Identity of the redeeming user
            license_key: Key minted by the licensing authority
            product: Snapshot of the verified invoice
            issuer_response: Raw licensing response, kept for support
            requester: Display metadata of the redeeming user

        Returns:
            The stored record

        Raises:
            DuplicateInvoiceError: If the invoice is already recorded
            StorageError: On any other storage failure
        """
        redeemed_at = self._clock()
        with self._connection() as conn:
            try:
                conn.execute("""
                    INSERT INTO redeemed_invoices
                    (invoice_id, requester_id, requester_name, license_key,
                     product_id, product_name, amount, currency, customer_email,
                     redeemed_at, product_snapshot, issuer_response, requester_metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    invoice_id,
                    requester_id,
                    requester.display_name,
                    license_key,
                    product.product_id,
                    product.product_name,
                    product.amount,
                    product.currency,
                    product.customer_email,
                    redeemed_at.isoformat(),
                    json.dumps(product.to_dict()),
                    json.dumps(issuer_response, default=str),
                    json.dumps(requester.to_dict())
                ))
                conn.commit()
            except sqlite3.IntegrityError as exc:
                if "redeemed_invoices.invoice_id" in str(exc):
                    raise DuplicateInvoiceError(invoice_id) from exc
                raise

        logger.info("Invoice %s recorded as redeemed for requester %s", invoice_id, requester_id)
        return RedemptionRecord(
            invoice_id=invoice_id,
            requester_id=requester_id,
            license_key=license_key,
            product=product,
            issuer_response=issuer_response,
            requester=requester,
            redeemed_at=redeemed_at
        )

    def check_and_consume_rate_limit(
        self,
        requester_id: str,
        action: str,
        max_attempts: int,
        window_hours: float
    ) -> RateLimitDecision:
        """Atomically decide admission and update the counter.

        Fixed-reset window: a missing or expired counter restarts at one
        attempt with ``reset_at = now + window_hours``. A live counter below
        ``max_attempts`` is incremented and admitted; otherwise the attempt is
        denied and the counter left unchanged.

        The read and the write run inside one ``BEGIN IMMEDIATE`` transaction,
        so concurrent attempts by the same requester are serialized.

        Args:
            requester_id: Identity of the requester
            action: Action kind being limited (e.g. "redeem")
            max_attempts: Attempts allowed per window
            window_hours: Window length in hours

        Returns:
            RateLimitDecision describing admission and counter state

        Raises:
            ValueError: If limits are not positive
            StorageError: If the counter cannot be read or written
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if window_hours <= 0:
            raise ValueError("window_hours must be > 0")

        now = self._clock()
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT attempts, reset_after FROM rate_limits WHERE requester_id = ? AND action = ?",
                (requester_id, action)
            ).fetchone()

            if row is None or now >= datetime.fromisoformat(row[1]):
                reset_at = now + timedelta(hours=window_hours)
                conn.execute("""
                    INSERT INTO rate_limits
                    (requester_id, action, attempts, window_start, last_attempt, reset_after)
                    VALUES (?, ?, 1, ?, ?, ?)
                    ON CONFLICT (requester_id, action) DO UPDATE SET
                        attempts = 1,
                        window_start = excluded.window_start,
                        last_attempt = excluded.last_attempt,
                        reset_after = excluded.reset_after
                """, (requester_id, action, now.isoformat(), now.isoformat(), reset_at.isoformat()))
                decision = RateLimitDecision(True, 1, max_attempts, reset_at)
            elif row[0] < max_attempts:
                conn.execute("""
                    UPDATE rate_limits SET attempts = attempts + 1, last_attempt = ?
                    WHERE requester_id = ? AND action = ?
                """, (now.isoformat(), requester_id, action))
                decision = RateLimitDecision(True, row[0] + 1, max_attempts, datetime.fromisoformat(row[1]))
            else:
                decision = RateLimitDecision(False, row[0], max_attempts, datetime.fromisoformat(row[1]))
            conn.commit()

        if not decision.allowed:
            logger.info(
                "Rate limit hit for %s/%s (%d/%d, resets %s)",
                requester_id, action, decision.attempts_used, max_attempts, decision.reset_at.isoformat()
            )
        return decision

    def record_audit(self, actor_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Append an audit entry. Best-effort: failures are logged, never raised."""
        try:
            with self._connection() as conn:
                conn.execute(
                    "INSERT INTO audit_log (actor_id, action, details, timestamp) VALUES (?, ?, ?, ?)",
                    (actor_id, action, json.dumps(details or {}, default=str), self._clock().isoformat())
                )
                conn.commit()
            logger.debug("Audit %s for %s", action, actor_id)
        except Exception:
            logger.exception("Failed to write audit entry %s for %s", action, actor_id)

    def list_redemptions_for(self, requester_id: str) -> List[RedemptionRecord]:
        """Return every redemption by a requester, newest first."""
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT invoice_id, requester_id, license_key, product_snapshot,
                       issuer_response, requester_metadata, redeemed_at
                FROM redeemed_invoices
                WHERE requester_id = ?
                ORDER BY redeemed_at DESC, id DESC
            """, (requester_id,)).fetchall()

        records = []
        for row in rows:
            requester_data = json.loads(row[5]) if row[5] else {"requester_id": row[1]}
            records.append(RedemptionRecord(
                invoice_id=row[0],
                requester_id=row[1],
                license_key=row[2],
                product=ProductSnapshot.from_dict(json.loads(row[3])),
                issuer_response=json.loads(row[4]) if row[4] else {},
                requester=RequesterMetadata.from_dict(requester_data),
                redeemed_at=datetime.fromisoformat(row[6])
            ))
        return records

    def redemption_stats(self) -> Dict[str, int]:
        """Count all redemptions and those made since midnight UTC today."""
        now = self._clock().astimezone(timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self._connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM redeemed_invoices").fetchone()[0]
            today = conn.execute(
                "SELECT COUNT(*) FROM redeemed_invoices WHERE redeemed_at >= ?",
                (midnight.isoformat(),)
            ).fetchone()[0]
        return {"total": total or 0, "today": today or 0}

    def recent_audit(self, actor_id: Optional[str] = None, limit: int = 50) -> List[AuditEntry]:
        """Return audit entries newest first, optionally for a single actor."""
        query = "SELECT actor_id, action, details, timestamp FROM audit_log"
        params: List[Any] = []
        if actor_id is not None:
            query += " WHERE actor_id = ?"
            params.append(actor_id)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AuditEntry(
                actor_id=row[0],
                action=row[1],
                details=json.loads(row[2]) if row[2] else {},
                timestamp=datetime.fromisoformat(row[3])
            )
            for row in rows
        ]
