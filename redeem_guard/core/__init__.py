"""
Core modules for Redeem Guard.

This package contains invoice verification, license issuance, and the
redemption workflow that sequences them.
"""
