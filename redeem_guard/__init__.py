"""
Redeem Guard.

Exchanges storefront invoices for license keys with duplicate and abuse protection.
"""

__version__ = "0.1.0"
