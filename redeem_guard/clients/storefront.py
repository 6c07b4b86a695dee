"""
Storefront API client.

Fetches invoices and converts them into typed records on receipt.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from redeem_guard.core.errors import LookupErrorKind, RemoteLookupError

logger = logging.getLogger(__name__)

USER_AGENT = "redeem-guard/0.1"

_STATUS_KINDS = {
    404: LookupErrorKind.NOT_FOUND,
    401: LookupErrorKind.AUTH_FAILED,
    403: LookupErrorKind.ACCESS_DENIED,
    429: LookupErrorKind.RATE_LIMITED,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Invoice:
    """Storefront invoice as returned by ``GET /shops/{shop}/invoices/{id}``.

    ``raw`` keeps the verbatim payload for audit.
    """
    id: str
    paid: bool
    status: str
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "Invoice":
        """Validate a decoded JSON body and build an Invoice.

        Raises:
            ValueError: If the payload is not an object or has no ``id``
        """
        if not isinstance(payload, dict):
            raise ValueError("invoice payload must be a JSON object")
        if payload.get("id") in (None, ""):
            raise ValueError("invoice payload is missing 'id'")

        return cls(
            id=str(payload["id"]),
            paid=payload.get("paid") is True,
            status=str(payload.get("status") or ""),
            product_id=_optional_str(payload.get("product_id")),
            product_name=_optional_str(payload.get("product_name")),
            amount=_parse_amount(payload.get("amount")),
            currency=_optional_str(payload.get("currency")),
            customer_email=_optional_str(payload.get("customer_email")),
            customer_name=_optional_str(payload.get("customer_name")),
            created_at=parse_timestamp(payload.get("created_at")),
            paid_at=parse_timestamp(payload.get("paid_at")),
            raw=dict(payload)
        )


class StorefrontClient:
    """Bearer-authenticated client for the storefront invoice API.

    Construct, then ``open()`` before use and ``close()`` when done. Every
    request is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        shop_id: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """Initialize the storefront client.

        Args:
            api_url: Base URL of the storefront API
            api_key: Bearer token
            shop_id: Shop whose invoices are looked up
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)

        Raises:
            ValueError: If api_key or shop_id is missing
        """
        if not api_key or not api_key.strip():
            raise ValueError("storefront api_key is required and cannot be empty")
        if not shop_id or not str(shop_id).strip():
            raise ValueError("storefront shop_id is required and cannot be empty")

        self.api_url = api_url.rstrip("/")
        self.shop_id = str(shop_id)
        self.timeout = timeout
        self._api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def open(self) -> "StorefrontClient":
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                }
            )
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "StorefrontClient":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            raise RuntimeError("StorefrontClient is not open")
        return self._client

    def get_invoice(self, invoice_id: str) -> Invoice:
        """Fetch an invoice by its sanitized id.

        Raises:
            RemoteLookupError: On any non-2xx status, transport failure,
                timeout or malformed body
        """
        path = f"/shops/{self.shop_id}/invoices/{invoice_id}"
        logger.debug("Storefront request: GET %s", path)
        try:
            response = self.client.get(path)
        except httpx.TimeoutException as exc:
            logger.error("Storefront request timed out for invoice %s", invoice_id)
            raise RemoteLookupError(LookupErrorKind.NETWORK_ERROR, f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            logger.error("Storefront transport error for invoice %s: %s", invoice_id, exc)
            raise RemoteLookupError(LookupErrorKind.NETWORK_ERROR, str(exc)) from exc

        logger.debug("Storefront response: %d %s", response.status_code, path)
        if not response.is_success:
            kind = _STATUS_KINDS.get(response.status_code, LookupErrorKind.API_ERROR)
            raise RemoteLookupError(kind, _error_message(response), status_code=response.status_code)

        try:
            return Invoice.from_payload(response.json())
        except ValueError as exc:
            raise RemoteLookupError(
                LookupErrorKind.API_ERROR,
                f"Invalid response from storefront API: {exc}",
                status_code=response.status_code
            ) from exc

    def ping(self) -> bool:
        """Return True if the storefront answers ``GET /ping`` with 200."""
        try:
            return self.client.get("/ping").status_code == 200
        except httpx.HTTPError as exc:
            logger.error("Storefront connectivity check failed: %s", exc)
            return False


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"
