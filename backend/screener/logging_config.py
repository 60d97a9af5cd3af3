"""Logging setup for the screener service."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DELIVERY_LOGGER_NAME = "screener.delivery"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger. Call once at startup."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    if not any(getattr(h, "_screener", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))
        handler._screener = True
        root.addHandler(handler)

    # Third-party clients are chatty at INFO
    for noisy in ("httpx", "httpcore", "googleapiclient.discovery_cache"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_delivery_event(
    session_id: str,
    branch: str,
    status: str,
    error: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log one delivery branch outcome as a JSON line."""
    logger = logging.getLogger(DELIVERY_LOGGER_NAME)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sessionId": session_id,
        "branch": branch,
        "status": status,
        "error": error,
        **extra,
    }
    level = logging.INFO if status == "ok" else logging.ERROR
    try:
        logger.log(level, json.dumps(entry, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.log(level, json.dumps({"branch": branch, "error": "serialization_failed"}))
