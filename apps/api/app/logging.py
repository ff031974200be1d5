from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import Settings, get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())

# Structured fields copied from ``extra=`` into the JSON line. Anything else is dropped.
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "quotation_id",
        "opportunity_id",
        "user_id",
        "channel",
        "error_code",
        "severity",
        "old_stage",
        "new_stage",
        "resolution_source",
        "is_resend",
        "message_sent",
        "outcome",
        "event_type",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Sets correlation_id up front, so callers must not pass it through ``extra=``.
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str, environment: str):
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            key: value
            for key, value in record.__dict__.items()
            if key in LOG_FIELDS and key not in _BASE_RECORD_KEYS
        }
        error_value = fields.get("error")
        if isinstance(error_value, str):
            fields["error"] = error_value[:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "env": self.environment,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_dispatch_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(settings.app_name, settings.app_env))

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._dispatch_configured = True  # type: ignore[attr-defined]
