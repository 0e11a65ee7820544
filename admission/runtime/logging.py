from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

from admission.common.logging import sanitize_text, sanitize_value

LOGGER_NAME = "admission_engine"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
RESERVED_RECORD_FIELDS = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line with URLs and api keys masked."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
        }
        payload.update(
            {
                key: sanitize_value(value)
                for key, value in record.__dict__.items()
                if key not in RESERVED_RECORD_FIELDS and not key.startswith("_")
            }
        )

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    logger.setLevel(getattr(logging, resolved, logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
