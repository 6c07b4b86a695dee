"""
Service wiring.

Builds the ledger, HTTP clients and orchestrator from configuration and
owns their lifecycle.
"""

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import httpx

from redeem_guard.clients.licensing import LicensingClient
from redeem_guard.clients.storefront import StorefrontClient
from redeem_guard.config.loader import (
    LICENSING_SECRET_ENV,
    STOREFRONT_API_KEY_ENV,
    RedeemGuardConfig,
)
from redeem_guard.core.issuer import LicenseIssuer
from redeem_guard.core.orchestrator import REDEEM_ACTION, RedemptionOrchestrator
from redeem_guard.core.verifier import InvoiceVerifier
from redeem_guard.storage.ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Opened collaborators plus the orchestrator wired to them."""
    ledger: Ledger
    storefront: StorefrontClient
    licensing: LicensingClient
    orchestrator: RedemptionOrchestrator


def build_storefront(
    config: RedeemGuardConfig,
    transport: Optional[httpx.BaseTransport] = None
) -> StorefrontClient:
    if not config.storefront.api_key:
        raise ValueError(f"{STOREFRONT_API_KEY_ENV} is not set")
    return StorefrontClient(
        api_url=config.storefront.api_url,
        api_key=config.storefront.api_key,
        shop_id=config.storefront.shop_id,
        timeout=config.storefront.timeout_seconds,
        transport=transport
    )


def build_licensing(
    config: RedeemGuardConfig,
    transport: Optional[httpx.BaseTransport] = None
) -> LicensingClient:
    if not config.licensing.secret:
        raise ValueError(f"{LICENSING_SECRET_ENV} is not set")
    return LicensingClient(
        api_url=config.licensing.api_url,
        secret=config.licensing.secret,
        app_name=config.licensing.app_name,
        owner_id=config.licensing.owner_id,
        version=config.licensing.version,
        timeout=config.licensing.timeout_seconds,
        transport=transport
    )


@contextmanager
def open_services(
    config: RedeemGuardConfig,
    storefront_transport: Optional[httpx.BaseTransport] = None,
    licensing_transport: Optional[httpx.BaseTransport] = None
) -> Iterator[Services]:
    """Open every collaborator, yield the wired services, then close them.

    Collaborators opened before a failure are closed in reverse order.

    Raises:
        ValueError: If a required secret is missing
        StorageError: If the ledger cannot be initialized
    """
    with ExitStack() as stack:
        ledger = Ledger(config.database.path, timeout=config.database.timeout_seconds)
        stack.enter_context(ledger)
        storefront = stack.enter_context(build_storefront(config, storefront_transport))
        licensing = stack.enter_context(build_licensing(config, licensing_transport))

        limit = config.get_rate_limit(REDEEM_ACTION)
        orchestrator = RedemptionOrchestrator(
            ledger=ledger,
            verifier=InvoiceVerifier(storefront, max_age_days=config.max_invoice_age_days),
            issuer=LicenseIssuer(
                licensing,
                expiry_days=config.licensing.expiry_days,
                key_mask=config.licensing.key_mask,
                level=config.licensing.level
            ),
            max_attempts=limit.max_attempts,
            window_hours=limit.window_hours,
            action=REDEEM_ACTION
        )
        logger.debug("Services opened")
        yield Services(ledger, storefront, licensing, orchestrator)
