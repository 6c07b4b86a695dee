from redeem_guard.utils.logging import JsonFormatter, configure_logging

__all__ = ["configure_logging", "JsonFormatter"]
