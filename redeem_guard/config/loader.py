"""
Configuration management and loading.

Handles the YAML settings file and secrets taken from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

STOREFRONT_API_KEY_ENV = "STOREFRONT_API_KEY"
LICENSING_SECRET_ENV = "LICENSING_SECRET"


@dataclass(frozen=True)
class StorefrontConfig:
    """Storefront API connection settings."""
    api_url: str
    shop_id: str
    timeout_seconds: float = 10.0
    api_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("storefront.timeout_seconds must be > 0")


@dataclass(frozen=True)
class LicensingConfig:
    """Licensing authority settings."""
    api_url: str
    app_name: str
    owner_id: str
    version: str = "1.0"
    timeout_seconds: float = 10.0
    expiry_days: int = 9999
    key_mask: str = "******-******-******-******"
    level: int = 1
    secret: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("licensing.timeout_seconds must be > 0")
        if self.expiry_days <= 0:
            raise ValueError("licensing.expiry_days must be > 0")


@dataclass(frozen=True)
class DatabaseConfig:
    """Ledger storage settings."""
    path: str = "redeem_guard.db"
    timeout_seconds: float = 5.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("database.timeout_seconds must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Attempts allowed per fixed window for one action kind."""
    max_attempts: int
    window_hours: float

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.window_hours <= 0:
            raise ValueError("window_hours must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    """Log output settings."""
    level: str = "INFO"
    json: bool = False
    file: Optional[str] = None


@dataclass(frozen=True)
class RedeemGuardConfig:
    """Complete application configuration."""
    storefront: StorefrontConfig
    licensing: LicensingConfig
    database: DatabaseConfig
    rate_limits: Dict[str, RateLimitConfig]
    max_invoice_age_days: int = 30
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_rate_limit(self, action: str) -> RateLimitConfig:
        """Get the limit for an action kind, falling back to the redeem default."""
        return self.rate_limits.get(action, DEFAULT_RATE_LIMITS["redeem"])


DEFAULT_RATE_LIMITS = {
    "redeem": RateLimitConfig(max_attempts=1, window_hours=24),
}


def load_config(path: str, env: Optional[Mapping[str, str]] = None) -> RedeemGuardConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so a typo never silently disables a limit.
    Secrets are read from ``env`` (defaults to ``os.environ``).

    Args:
        path: Path to YAML configuration file
        env: Environment mapping for secrets

    Returns:
        Validated RedeemGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    env = os.environ if env is None else env

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'storefront', 'licensing', 'database', 'rate_limits', 'verification', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    # Storefront
    storefront_data = _section(raw_config, 'storefront', required=True)
    _check_keys(storefront_data, {'api_url', 'shop_id', 'timeout_seconds'}, 'storefront')
    _require(storefront_data, ('api_url', 'shop_id'), 'storefront')
    storefront = StorefrontConfig(
        api_url=str(storefront_data['api_url']),
        shop_id=str(storefront_data['shop_id']),
        timeout_seconds=_number(storefront_data.get('timeout_seconds', 10.0), 'storefront.timeout_seconds'),
        api_key=env.get(STOREFRONT_API_KEY_ENV)
    )

    # Licensing
    licensing_data = _section(raw_config, 'licensing', required=True)
    _check_keys(
        licensing_data,
        {'api_url', 'app_name', 'owner_id', 'version', 'timeout_seconds', 'expiry_days', 'key_mask', 'level'},
        'licensing'
    )
    _require(licensing_data, ('api_url', 'app_name', 'owner_id'), 'licensing')
    licensing = LicensingConfig(
        api_url=str(licensing_data['api_url']),
        app_name=str(licensing_data['app_name']),
        owner_id=str(licensing_data['owner_id']),
        version=str(licensing_data.get('version', '1.0')),
        timeout_seconds=_number(licensing_data.get('timeout_seconds', 10.0), 'licensing.timeout_seconds'),
        expiry_days=int(_number(licensing_data.get('expiry_days', 9999), 'licensing.expiry_days')),
        key_mask=str(licensing_data.get('key_mask', LicensingConfig.key_mask)),
        level=int(_number(licensing_data.get('level', 1), 'licensing.level')),
        secret=env.get(LICENSING_SECRET_ENV)
    )

    # Database
    database_data = _section(raw_config, 'database')
    _check_keys(database_data, {'path', 'timeout_seconds'}, 'database')
    database = DatabaseConfig(
        path=str(database_data.get('path', DatabaseConfig.path)),
        timeout_seconds=_number(database_data.get('timeout_seconds', 5.0), 'database.timeout_seconds')
    )

    # Rate limits
    rate_limits = dict(DEFAULT_RATE_LIMITS)
    for action, limit_data in _section(raw_config, 'rate_limits').items():
        if not isinstance(limit_data, dict):
            raise ValueError(f"Rate limit '{action}' must be a dictionary")
        _check_keys(limit_data, {'max_attempts', 'window_hours'}, f"rate_limits.{action}")
        _require(limit_data, ('max_attempts', 'window_hours'), f"rate_limits.{action}")
        max_attempts = limit_data['max_attempts']
        if not isinstance(max_attempts, int) or isinstance(max_attempts, bool):
            raise ValueError(f"'max_attempts' in rate_limits.{action} must be an integer")
        rate_limits[str(action)] = RateLimitConfig(
            max_attempts=max_attempts,
            window_hours=_number(limit_data['window_hours'], f"rate_limits.{action}.window_hours")
        )

    # Verification
    verification_data = _section(raw_config, 'verification')
    _check_keys(verification_data, {'max_invoice_age_days'}, 'verification')
    max_age = verification_data.get('max_invoice_age_days', 30)
    if not isinstance(max_age, int) or isinstance(max_age, bool) or max_age <= 0:
        raise ValueError("'max_invoice_age_days' must be a positive integer")

    # Logging
    logging_data = _section(raw_config, 'logging')
    _check_keys(logging_data, {'level', 'json', 'file'}, 'logging')
    logging_config = LoggingConfig(
        level=str(logging_data.get('level', 'INFO')).upper(),
        json=bool(logging_data.get('json', False)),
        file=logging_data.get('file')
    )

    return RedeemGuardConfig(
        storefront=storefront,
        licensing=licensing,
        database=database,
        rate_limits=rate_limits,
        max_invoice_age_days=max_age,
        logging=logging_config
    )


def _section(raw_config: Dict[str, Any], name: str, required: bool = False) -> Dict[str, Any]:
    if name not in raw_config:
        if required:
            raise ValueError(f"Missing required '{name}' section")
        return {}
    data = raw_config[name]
    if data is None and not required:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _require(data: Dict[str, Any], keys: tuple, path: str) -> None:
    for key in keys:
        if key not in data or data[key] in (None, ""):
            raise ValueError(f"Missing required '{key}' in {path}")


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)
