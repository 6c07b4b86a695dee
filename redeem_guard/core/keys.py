"""
License key retrieval.

Read path for a requester's keys. Goes straight to the ledger.
"""

import logging
from typing import List

from redeem_guard.storage.ledger import Ledger
from redeem_guard.storage.models import KeySummary

logger = logging.getLogger(__name__)


def list_keys(ledger: Ledger, requester_id: str) -> List[KeySummary]:
    """Return the requester's redeemed keys, newest first.

    Raises:
        StorageError: If the ledger cannot be read
    """
    keys = [
        KeySummary(
            invoice_id=record.invoice_id,
            license_key=record.license_key,
            product_name=record.product.product_name,
            redeemed_at=record.redeemed_at
        )
        for record in ledger.list_redemptions_for(requester_id)
    ]
    logger.info("Retrieved %d licenses for requester %s", len(keys), requester_id)
    ledger.record_audit(requester_id, "key_retrieval", {"keys_retrieved": len(keys)})
    return keys
