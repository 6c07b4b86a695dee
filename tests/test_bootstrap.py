"""
Integration tests for service wiring.

Runs a full redemption through real clients backed by httpx.MockTransport.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
import yaml

from redeem_guard.bootstrap import build_licensing, build_storefront, open_services
from redeem_guard.config.loader import LICENSING_SECRET_ENV, STOREFRONT_API_KEY_ENV, load_config
from redeem_guard.core.orchestrator import OutcomeKind

ENV = {STOREFRONT_API_KEY_ENV: "sk_test", LICENSING_SECRET_ENV: "seller-secret"}


@pytest.fixture
def config_file(tmp_path):
    data = {
        "storefront": {"api_url": "https://store.example.com/v1", "shop_id": "777"},
        "licensing": {
            "api_url": "https://licensing.example.com/api/seller/",
            "app_name": "My App",
            "owner_id": "owner123",
        },
        "database": {"path": str(tmp_path / "ledger.db")},
    }
    path = tmp_path / "redeem_guard.yaml"
    path.write_text(yaml.dump(data), encoding="utf-8")
    return str(path)


def _storefront_handler(request: httpx.Request) -> httpx.Response:
    created = datetime.now(timezone.utc) - timedelta(days=1)
    return httpx.Response(200, json={
        "id": request.url.path.rsplit("/", 1)[-1],
        "paid": True,
        "status": "paid",
        "product_name": "Pro Plan",
        "product_id": 42,
        "amount": 19.99,
        "currency": "USD",
        "created_at": created.isoformat(),
    })


class TestOpenServices:
    """Test open_services against mocked remote APIs."""

    def test_full_redemption(self, config_file):
        config = load_config(config_file, env=ENV)
        forms = []

        def licensing_handler(request):
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"success": True, "message": "OK", "key": "LIC-0001-AAAA"})

        with open_services(
            config,
            storefront_transport=httpx.MockTransport(_storefront_handler),
            licensing_transport=httpx.MockTransport(licensing_handler)
        ) as services:
            first = services.orchestrator.redeem("U1", "INV12345")
            second = services.orchestrator.redeem("U2", "INV12345")
            assert services.ledger.is_redeemed("INV12345") is True

        assert first.kind == OutcomeKind.SUCCESS
        assert first.license_key == "LIC-0001-AAAA"
        assert second.kind == OutcomeKind.ALREADY_REDEEMED
        assert len(forms) == 1
        assert forms[0]["sellerkey"] == ["seller-secret"]
        assert forms[0]["expiry"] == ["9999"]

    def test_rate_limit_comes_from_config(self, config_file):
        config = load_config(config_file, env=ENV)

        with open_services(
            config,
            storefront_transport=httpx.MockTransport(lambda request: httpx.Response(404)),
            licensing_transport=httpx.MockTransport(lambda request: httpx.Response(500))
        ) as services:
            first = services.orchestrator.redeem("U1", "INV12345")
            second = services.orchestrator.redeem("U1", "INV67890")

        assert first.kind == OutcomeKind.VERIFICATION_FAILED
        assert second.kind == OutcomeKind.RATE_LIMITED
        assert second.max_attempts == 1

    def test_everything_closed_on_exit(self, config_file):
        config = load_config(config_file, env=ENV)

        with open_services(config) as services:
            assert services.ledger.is_open

        assert not services.ledger.is_open
        with pytest.raises(RuntimeError):
            services.storefront.client
        with pytest.raises(RuntimeError):
            services.licensing.client

    def test_missing_licensing_secret(self, config_file):
        config = load_config(config_file, env={STOREFRONT_API_KEY_ENV: "sk_test"})

        with pytest.raises(ValueError, match=LICENSING_SECRET_ENV):
            with open_services(config):
                pass


def test_builders_require_secrets(config_file):
    config = load_config(config_file, env={})

    with pytest.raises(ValueError, match=STOREFRONT_API_KEY_ENV):
        build_storefront(config)
    with pytest.raises(ValueError, match=LICENSING_SECRET_ENV):
        build_licensing(config)
