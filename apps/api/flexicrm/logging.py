from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from flexicrm.context import get_correlation_id, get_log_context


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "organization_id",
        "user_id",
        "entity_id",
        "field_id",
        "slug",
        "permission_id",
        "event_name",
        "route_group",
        "count",
        "error",
    }
)
_ACTOR_FIELDS = ("user_id", "organization_id")
_MAX_ERROR_LENGTH = 500


class RequestContextFilter(logging.Filter):
    """Fill correlation id and actor from the request context when the call site did not pass them."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_log_context()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = context["correlation_id"]
        for key in _ACTOR_FIELDS:
            if getattr(record, key, None) is None and context[key] is not None:
                setattr(record, key, context[key])
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {}
        for key in _KNOWN_FIELDS:
            if key in _BASE_RECORD_KEYS:
                continue
            value = getattr(record, key, None)
            if value is not None:
                fields[key] = value

        # Error strings can carry whole SQL statements.
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": dict(sorted(fields.items())),
        }
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_flexicrm_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    # http.request already covers every call.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._flexicrm_configured = True  # type: ignore[attr-defined]
