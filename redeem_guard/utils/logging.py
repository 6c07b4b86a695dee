"""
Logging setup for Redeem Guard.

Console output is human-readable by default, or one JSON object per line for
log shippers. Errors can additionally be written to a file.

Usage:
    import logging
    from redeem_guard.utils.logging import configure_logging

    configure_logging(level="INFO", json_logs=False)
    log = logging.getLogger(__name__)
    log.info("redeemed", extra={"context": {"invoice_id": "INV12345"}})
"""

from __future__ import annotations

import json
import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, Optional


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra={"context": {...}}`` is merged in."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload.update(context)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure root logging.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING").
    json_logs : bool
        Emit JSON lines instead of the console format.
    log_file : str, optional
        When set, ERROR and above are also appended to this file.
    """
    formatter_name = "json" if json_logs else "console"
    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter_name,
            "level": level,
        }
    }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["errors"] = {
            "class": "logging.FileHandler",
            "filename": log_file,
            "formatter": formatter_name,
            "level": "ERROR",
            "encoding": "utf-8",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "json": {"()": JsonFormatter},
            },
            "handlers": handlers,
            "root": {"handlers": list(handlers), "level": level},
            "loggers": {"httpx": {"level": "WARNING"}},
        }
    )


__all__ = ["configure_logging", "JsonFormatter"]
