"""
Unit tests for storage layer.

Tests schema creation, redemption recording, rate limiting and auditing.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest

from redeem_guard.core.errors import DuplicateInvoiceError, StorageError
from redeem_guard.storage.db import get_connection
from redeem_guard.storage.ledger import Ledger, initialize_schema
from redeem_guard.storage.models import ProductSnapshot, RequesterMetadata

from conftest import NOW


def _snapshot(invoice_id="INV12345", product_name="Pro Plan"):
    return ProductSnapshot(
        invoice_id=invoice_id,
        product_id="prod_1",
        product_name=product_name,
        amount=19.99,
        currency="USD",
        customer_email="buyer@example.com",
        customer_name="Buyer",
        status="paid",
        created_at=NOW - timedelta(days=1),
        paid_at=NOW - timedelta(days=1)
    )


def _record(ledger, invoice_id="INV12345", requester_id="U1", key="KEY-1"):
    return ledger.record_redemption(
        invoice_id=invoice_id,
        requester_id=requester_id,
        license_key=key,
        product=_snapshot(invoice_id),
        issuer_response={"success": True, "key": key},
        requester=RequesterMetadata(requester_id=requester_id, display_name="buyer#0001")
    )


class TestLedgerSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify all three tables are created."""
        initialize_schema(db_path)

        conn = get_connection(db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"redeemed_invoices", "rate_limits", "audit_log"} <= tables
        finally:
            conn.close()

    def test_schema_creation_is_idempotent(self, db_path):
        initialize_schema(db_path)
        initialize_schema(db_path)

    def test_operations_require_open_ledger(self, db_path):
        ledger = Ledger(db_path)
        with pytest.raises(StorageError, match="not open"):
            ledger.is_redeemed("INV12345")

    def test_unusable_path_is_storage_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")

        with pytest.raises(StorageError, match="Cannot initialize ledger"):
            Ledger(str(blocker / "sub" / "ledger.db")).open()

    def test_context_manager_lifecycle(self, db_path):
        with Ledger(db_path) as ledger:
            assert ledger.is_open
            assert ledger.ping() is True
        assert not ledger.is_open


class TestRedemptionRecords:
    """Test redemption insertion and lookup."""

    def test_record_and_check(self, ledger):
        assert ledger.is_redeemed("INV12345") is False

        record = _record(ledger)

        assert ledger.is_redeemed("INV12345") is True
        assert record.redeemed_at == NOW
        assert record.license_key == "KEY-1"

    def test_duplicate_insert_raises_distinct_error(self, ledger):
        _record(ledger)

        with pytest.raises(DuplicateInvoiceError) as exc_info:
            _record(ledger, requester_id="U2", key="KEY-2")

        assert exc_info.value.invoice_id == "INV12345"
        assert isinstance(exc_info.value, StorageError)

    def test_concurrent_inserts_only_one_wins(self, ledger):
        """Two writers racing on the same invoice: exactly one record survives."""
        barrier = threading.Barrier(2)

        def attempt(n):
            barrier.wait()
            try:
                _record(ledger, requester_id=f"U{n}", key=f"KEY-{n}")
                return "ok"
            except DuplicateInvoiceError:
                return "duplicate"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = sorted(pool.map(attempt, [1, 2]))

        assert results == ["duplicate", "ok"]
        conn = get_connection(ledger.db_path)
        try:
            count = conn.execute(
                "SELECT COUNT(*) FROM redeemed_invoices WHERE invoice_id = 'INV12345'"
            ).fetchone()[0]
        finally:
            conn.close()
        assert count == 1

    def test_snapshots_round_trip(self, ledger):
        _record(ledger)

        records = ledger.list_redemptions_for("U1")

        assert len(records) == 1
        record = records[0]
        assert record.product == _snapshot()
        assert record.issuer_response == {"success": True, "key": "KEY-1"}
        assert record.requester.display_name == "buyer#0001"
        assert record.requester.channel == "discord_bot"

    def test_list_newest_first(self, ledger, clock):
        _record(ledger, invoice_id="INV00001", key="KEY-1")
        clock.advance(hours=1)
        _record(ledger, invoice_id="INV00002", key="KEY-2")
        _record(ledger, invoice_id="INV00003", requester_id="U2", key="KEY-3")

        records = ledger.list_redemptions_for("U1")

        assert [r.invoice_id for r in records] == ["INV00002", "INV00001"]

    def test_list_for_unknown_requester_is_empty(self, ledger):
        assert ledger.list_redemptions_for("nobody") == []

    def test_connection_failure_maps_to_storage_error(self, ledger):
        with patch("redeem_guard.storage.ledger.get_connection", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(StorageError, match="disk I/O error"):
                ledger.is_redeemed("INV12345")

    def test_os_error_on_connect_maps_to_storage_error(self, ledger):
        with patch("redeem_guard.storage.ledger.get_connection", side_effect=PermissionError("read-only volume")):
            with pytest.raises(StorageError, match="read-only volume"):
                ledger.is_redeemed("INV12345")

    def test_redemption_stats(self, ledger, clock):
        clock.advance(days=-2)
        _record(ledger, invoice_id="INV00001")
        clock.advance(days=2)
        _record(ledger, invoice_id="INV00002")

        assert ledger.redemption_stats() == {"total": 2, "today": 1}


class TestRateLimit:
    """Test fixed-window rate limiting."""

    def test_first_attempt_opens_window(self, ledger):
        decision = ledger.check_and_consume_rate_limit("U1", "redeem", 3, 24)

        assert decision.allowed is True
        assert decision.attempts_used == 1
        assert decision.max_attempts == 3
        assert decision.reset_at == NOW + timedelta(hours=24)

    def test_attempts_increment_until_limit(self, ledger, clock):
        first = ledger.check_and_consume_rate_limit("U1", "redeem", 2, 24)
        clock.advance(hours=1)
        second = ledger.check_and_consume_rate_limit("U1", "redeem", 2, 24)

        assert second.allowed is True
        assert second.attempts_used == 2
        assert second.reset_at == first.reset_at

    def test_denied_attempts_do_not_increment(self, ledger):
        ledger.check_and_consume_rate_limit("U1", "redeem", 1, 24)

        denied = [ledger.check_and_consume_rate_limit("U1", "redeem", 1, 24) for _ in range(3)]

        assert all(not d.allowed for d in denied)
        assert all(d.attempts_used == 1 for d in denied)
        assert all(d.reset_at == NOW + timedelta(hours=24) for d in denied)

    def test_expired_window_resets(self, ledger, clock):
        ledger.check_and_consume_rate_limit("U1", "redeem", 1, 24)
        clock.advance(hours=24)

        decision = ledger.check_and_consume_rate_limit("U1", "redeem", 1, 24)

        assert decision.allowed is True
        assert decision.attempts_used == 1
        assert decision.reset_at == NOW + timedelta(hours=48)

    def test_actions_and_requesters_are_independent(self, ledger):
        ledger.check_and_consume_rate_limit("U1", "redeem", 1, 24)

        assert ledger.check_and_consume_rate_limit("U2", "redeem", 1, 24).allowed
        assert ledger.check_and_consume_rate_limit("U1", "panel", 1, 24).allowed

    def test_concurrent_attempts_respect_limit(self, ledger):
        """Simultaneous attempts never admit more than max_attempts."""
        barrier = threading.Barrier(8)

        def attempt(_):
            barrier.wait()
            return ledger.check_and_consume_rate_limit("U1", "redeem", 3, 24).allowed

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert results.count(True) == 3

    @pytest.mark.parametrize("max_attempts,window_hours", [(0, 24), (1, 0), (-1, 24)])
    def test_invalid_limits(self, ledger, max_attempts, window_hours):
        with pytest.raises(ValueError):
            ledger.check_and_consume_rate_limit("U1", "redeem", max_attempts, window_hours)


class TestAudit:
    """Test best-effort audit logging."""

    def test_audit_entries_are_appended(self, ledger, clock):
        ledger.record_audit("U1", "redeem_command", {"invoice_id": "INV12345"})
        clock.advance(seconds=1)
        ledger.record_audit("U1", "redemption_success")
        ledger.record_audit("U2", "key_retrieval")

        entries = ledger.recent_audit("U1")

        assert [e.action for e in entries] == ["redemption_success", "redeem_command"]
        assert entries[1].details == {"invoice_id": "INV12345"}
        assert len(ledger.recent_audit()) == 3

    def test_audit_failure_is_swallowed(self, db_path):
        ledger = Ledger(db_path)  # never opened

        ledger.record_audit("U1", "redeem_command", {"invoice_id": "INV12345"})

    def test_audit_storage_error_is_swallowed(self, ledger):
        with patch("redeem_guard.storage.ledger.get_connection", side_effect=sqlite3.OperationalError("locked")):
            ledger.record_audit("U1", "redeem_command")
