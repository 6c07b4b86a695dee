"""
Unit tests for license issuance.
"""

from unittest.mock import Mock

import pytest

from redeem_guard.clients.licensing import LicenseResponse, LicensingClient
from redeem_guard.core.errors import IssuanceError
from redeem_guard.core.issuer import LicenseIssuer, mask_key

from conftest import make_invoice


class TestLicenseIssuer:
    """Test LicenseIssuer against a mocked licensing client."""

    def setup_method(self):
        self.licensing = Mock(spec=LicensingClient)
        self.issuer = LicenseIssuer(self.licensing, expiry_days=9999, key_mask="****-****", level=2)

    def test_success(self):
        raw = {"success": True, "key": "ABCD-EFGH"}
        self.licensing.create_license.return_value = LicenseResponse(True, "ok", "ABCD-EFGH", raw)

        result = self.issuer.issue("INV12345", "U1", make_invoice())

        assert result.success is True
        assert result.license_key == "ABCD-EFGH"
        assert result.raw_response == raw
        self.licensing.create_license.assert_called_once_with(
            note="invoice:INV12345 requester:U1 product:Pro Plan",
            expiry_days=9999,
            mask="****-****",
            level=2
        )

    def test_refusal_forwards_message(self):
        self.licensing.create_license.return_value = LicenseResponse(False, "Seller key invalid", None, {"success": False})

        result = self.issuer.issue("INV12345", "U1", make_invoice())

        assert result.success is False
        assert result.error_kind == "Seller key invalid"
        assert result.license_key is None

    def test_success_without_key_is_failure(self):
        self.licensing.create_license.return_value = LicenseResponse(True, "", None, {"success": True})

        result = self.issuer.issue("INV12345", "U1", make_invoice())

        assert result.success is False
        assert result.error_kind == "License creation failed"

    def test_transport_failure_is_not_retried(self):
        self.licensing.create_license.side_effect = IssuanceError("NETWORK_ERROR", "timed out")

        result = self.issuer.issue("INV12345", "U1", make_invoice())

        assert result.success is False
        assert result.error_kind == "NETWORK_ERROR"
        assert self.licensing.create_license.call_count == 1


@pytest.mark.parametrize("key,masked", [
    ("ABCD-EFGH-IJKL", "**********IJKL"),
    ("ABCD", "****"),
    ("", ""),
])
def test_mask_key(key, masked):
    assert mask_key(key) == masked
