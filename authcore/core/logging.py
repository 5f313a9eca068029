"""JSON log lines for auth events, tagged with the request correlation id.

Only the whitelisted ``extra`` fields below are emitted. Email addresses are
masked on the way out, and extras that carry credentials (tokens, codes,
passwords) are reported by name only.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from authcore.core.validators import mask_email

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="")

AUTH_EVENT_FIELDS = (
    "user_id",
    "email",
    "session_id",
    "purpose",
    "action",
    "feature",
    "channel",
    "error_code",
    "migration_id",
)
REQUEST_FIELDS = ("path", "method", "status_code")
SECRET_FIELDS = frozenset({"token", "code", "password", "secret"})


class JsonLogFormatter(logging.Formatter):
    """Serialize auth log records into compact JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": CORRELATION_ID_CTX.get(),
        }

        for key in AUTH_EVENT_FIELDS + REQUEST_FIELDS:
            value = getattr(record, key, None)
            if value in (None, ""):
                continue
            payload[key] = mask_email(str(value)) if key == "email" else value

        redacted = sorted(key for key in SECRET_FIELDS if hasattr(record, key))
        if redacted:
            payload["redacted_fields"] = redacted

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    """Route every logger through one stdout JSON handler."""
    normalized_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(normalized_level)
    root_logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    CORRELATION_ID_CTX.set(correlation_id)


def get_correlation_id() -> str:
    return CORRELATION_ID_CTX.get()
