"""
Licensing authority client.

Mints license keys through the authority's seller endpoint.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from redeem_guard.core.errors import IssuanceError

logger = logging.getLogger(__name__)

USER_AGENT = "redeem-guard/0.1"


@dataclass(frozen=True)
class LicenseResponse:
    """Typed view of a licensing response."""
    success: bool
    message: str
    license_key: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "LicenseResponse":
        if not isinstance(payload, dict):
            raise ValueError("license payload must be a JSON object")
        key = payload.get("key")
        if key is None and isinstance(payload.get("keys"), list) and payload["keys"]:
            key = payload["keys"][0]
        return cls(
            success=payload.get("success") is True,
            message=str(payload.get("message") or ""),
            license_key=str(key) if key else None,
            raw=dict(payload)
        )


class LicensingClient:
    """Client for the licensing authority.

    Requests are authenticated by the shared secret plus the application
    identity (name, owner id, version). No request is ever retried here.
    """

    def __init__(
        self,
        api_url: str,
        secret: str,
        app_name: str,
        owner_id: str,
        version: str = "1.0",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        if not secret or not secret.strip():
            raise ValueError("licensing secret is required and cannot be empty")
        if not app_name or not owner_id:
            raise ValueError("licensing app_name and owner_id are required")

        self.api_url = api_url
        self.app_name = app_name
        self.owner_id = owner_id
        self.version = version
        self.timeout = timeout
        self._secret = secret
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def open(self) -> "LicensingClient":
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": USER_AGENT}
            )
        return self

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "LicensingClient":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            raise RuntimeError("LicensingClient is not open")
        return self._client

    def create_license(
        self,
        note: str,
        expiry_days: int,
        mask: str,
        level: int = 1
    ) -> LicenseResponse:
        """Mint a single license key.

        Args:
            note: Free-text note stored with the key by the authority
            expiry_days: Key lifetime in days
            mask: Key format mask
            level: Subscription level granted by the key

        Returns:
            LicenseResponse; ``success`` is False when the authority refused

        Raises:
            IssuanceError: On transport failure, timeout, non-2xx status or
                a body that is not a JSON object
        """
        form = {
            "type": "add",
            "sellerkey": self._secret,
            "name": self.app_name,
            "ownerid": self.owner_id,
            "ver": self.version,
            "expiry": str(expiry_days),
            "mask": mask,
            "level": str(level),
            "amount": "1",
            "note": note,
            "format": "JSON",
        }
        try:
            response = self.client.post(self.api_url, data=form)
        except httpx.TimeoutException as exc:
            logger.error("Licensing request timed out")
            raise IssuanceError("NETWORK_ERROR", f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            logger.error("Licensing transport error: %s", exc)
            raise IssuanceError("NETWORK_ERROR", str(exc)) from exc

        if not response.is_success:
            raise IssuanceError("API_ERROR", f"Licensing API returned HTTP {response.status_code}")

        try:
            return LicenseResponse.from_payload(response.json())
        except ValueError as exc:
            raise IssuanceError("API_ERROR", f"Invalid response from licensing API: {exc}") from exc
