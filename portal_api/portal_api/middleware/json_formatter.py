"""One-JSON-object-per-line log formatter for log aggregation.

Enabled by ``PORTAL_STRUCTURED_LOGGING=true``.  Besides the standard
fields, billing context passed through ``extra=`` is lifted to the top
level, so that a failed record can be found by website id::

    logger.error("...", extra={"website_id": "w-42", "trigger": "scheduled"})

    {"timestamp": "...", "level": "ERROR", "logger": "...", "message": "...",
     "website_id": "w-42", "trigger": "scheduled"}

Access-log entries from :class:`RequestLoggingMiddleware` carry their
payload under ``"request"``.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra=`` keys copied onto the JSON line when present.
CONTEXT_FIELDS: tuple[str, ...] = ("website_id", "billing_status", "trigger", "correlation_id", "request")


class JSONFormatter(logging.Formatter):
    """Render a :class:`logging.LogRecord` as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = record.__dict__.get(field)
            if value is not None:
                entry[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        # default=str covers datetimes and enums in billing context.
        return json.dumps(entry, default=str, ensure_ascii=False)


def configure_json_logging(level: int = logging.INFO) -> None:
    """Replace the root handlers with one stderr handler using :class:`JSONFormatter`."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
