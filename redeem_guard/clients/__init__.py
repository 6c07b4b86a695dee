"""
HTTP clients for the storefront and licensing collaborators.
"""

from .licensing import LicenseResponse, LicensingClient
from .storefront import Invoice, StorefrontClient

__all__ = ["Invoice", "LicenseResponse", "LicensingClient", "StorefrontClient"]
