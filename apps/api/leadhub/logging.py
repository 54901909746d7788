from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadhub.context import get_correlation_id
from leadhub.core.config import get_settings


_RESERVED_KEYS = frozenset(logging.makeLogRecord({}).__dict__.keys()) | {"args", "msg", "message", "asctime"}

HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
LEAD_FIELDS = ("lead_id", "activity_id", "previous_lead_id", "field", "change_type", "activities_written", "updated_count")
CACHE_FIELDS = ("cache_key", "cache_tags", "ttl", "bypass_reason", "operation")
SEARCH_FIELDS = ("search_term", "ignored_filters", "indexed_count", "search_backend")
EVENT_FIELDS = ("event_name", "error")

LOGGED_FIELDS = frozenset(HTTP_FIELDS + LEAD_FIELDS + CACHE_FIELDS + SEARCH_FIELDS + EVENT_FIELDS)
MAX_STRING_FIELD_LENGTH = 500


def _attach_correlation_id(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_correlation_id(record)
        return True


_base_record_factory = logging.getLogRecordFactory()


def _correlated_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # caplog and third-party handlers bypass our filter, so stamp records at creation
    record = _base_record_factory(*args, **kwargs)
    _attach_correlation_id(record)
    return record


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Collect whitelisted ``extra`` values from a record.

    Anything outside :data:`LOGGED_FIELDS` is dropped so that payloads such as
    request bodies or credentials never reach the log sink by accident.
    """
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_KEYS or key not in LOGGED_FIELDS:
            continue
        if isinstance(value, str) and len(value) > MAX_STRING_FIELD_LENGTH:
            value = value[:MAX_STRING_FIELD_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """Single-line human readable output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extract_fields(record).items()))
        line = f"{record.levelname:<7} {record.name} {record.getMessage()}"
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            line = f"{line} [{correlation_id}]"
        if rendered:
            line = f"{line} {rendered}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadhub_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ConsoleLogFormatter() if settings.log_format == "console" else JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_correlated_record_factory)
    root_logger._leadhub_configured = True  # type: ignore[attr-defined]
