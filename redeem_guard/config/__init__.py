"""
Configuration for Redeem Guard.
"""

from .loader import (
    DatabaseConfig,
    LicensingConfig,
    LoggingConfig,
    RateLimitConfig,
    RedeemGuardConfig,
    StorefrontConfig,
    load_config,
)

__all__ = [
    "DatabaseConfig",
    "LicensingConfig",
    "LoggingConfig",
    "RateLimitConfig",
    "RedeemGuardConfig",
    "StorefrontConfig",
    "load_config",
]
