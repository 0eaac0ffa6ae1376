"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object whose fields downstream
aggregators can index without regex parsing.

Activate by setting ``API_STRUCTURED_LOGGING=true``.  When enabled the
application replaces the default text-based log handlers with a
``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "console_api.access",
        "message": "request completed",
        "request": { ... },        // present when emitted by RequestLoggingMiddleware
        "billing_event": { ... },  // present when emitted by the webhook dispatcher
        "exc_info": "Traceback ..." // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra=`` keys copied verbatim into the JSON payload.
_STRUCTURED_EXTRAS: tuple[str, ...] = ("request", "billing_event")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _STRUCTURED_EXTRAS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
