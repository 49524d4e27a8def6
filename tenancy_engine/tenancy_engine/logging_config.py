"""Logging setup for services embedding the tenancy engine.

The library itself only ever calls ``logging.getLogger(__name__)``; hosts
decide how records are rendered.  :func:`configure_logging` installs either
a plain text handler or, with ``structured_logging`` enabled, a single-line
JSON handler for log aggregators.

JSON output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "tenancy_engine.pool.manager",
        "message": "Evicted LRU connection for tenant acme",
        "tenant_id": "acme",          // present when passed via ``extra``
        "resource_type": "users",     // present when passed via ``extra``
        "exc_info": "Traceback ..."   // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tenancy_engine.config import Settings

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# ``extra`` keys copied into JSON output when present on the record.
_CONTEXT_FIELDS: tuple[str, ...] = ("tenant_id", "resource_type", "action", "source")


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

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: Settings) -> logging.Handler:
    """Replace the ``tenancy_engine`` logger handlers according to *settings*.

    Only the package logger is touched so that host applications keep
    control of the root logger.  Returns the installed handler.
    """
    package_logger = logging.getLogger("tenancy_engine")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)

    handler = logging.StreamHandler()
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    package_logger.addHandler(handler)
    package_logger.setLevel(settings.log_level.upper())
    package_logger.propagate = False

    package_logger.info(
        "Logging configured (structured=%s, level=%s)",
        settings.structured_logging,
        settings.log_level.upper(),
    )
    return handler
