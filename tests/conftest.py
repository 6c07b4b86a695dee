"""
Shared fixtures for the Redeem Guard test suite.
"""

from datetime import datetime, timedelta, timezone

import pytest

from redeem_guard.clients.storefront import Invoice
from redeem_guard.storage.ledger import Ledger

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the ledger and verifier under test."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_invoice(invoice_id: str = "INV12345", created_at: datetime = None, **overrides) -> Invoice:
    fields = dict(
        id=invoice_id,
        paid=True,
        status="paid",
        product_id="prod_1",
        product_name="Pro Plan",
        amount=19.99,
        currency="USD",
        customer_email="buyer@example.com",
        customer_name="Buyer",
        created_at=created_at or NOW - timedelta(days=1),
        paid_at=(created_at or NOW - timedelta(days=1)) + timedelta(minutes=5),
    )
    fields.update(overrides)
    return Invoice(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ledger.db")


@pytest.fixture
def ledger(db_path, clock):
    ledger = Ledger(db_path, clock=clock)
    ledger.open()
    yield ledger
    ledger.close()
