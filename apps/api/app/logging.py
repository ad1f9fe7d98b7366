from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())

_HTTP_FIELDS = {"method", "path", "status_code", "duration_ms", "user_id", "team_id"}
_JOB_FIELDS = {"job_type", "status", "error"}
_PROCESS_FIELDS = {
    "operation",
    "event_type",
    "event_name",
    "definition_id",
    "execution_id",
    "step_id",
    "approval_id",
    "escalation_id",
    "metric_date",
}
_STRUCTURED_FIELDS = _HTTP_FIELDS | _JOB_FIELDS | _PROCESS_FIELDS
_MAX_ERROR_LENGTH = 500


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in _STRUCTURED_FIELDS and key not in _BASE_RECORD_KEYS
    }
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str, environment: str) -> None:
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "env": self.environment,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        if fields:
            payload["fields"] = fields
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line output for local runs; same fields as the JSON formatter."""

    def format(self, record: logging.LogRecord) -> str:
        fields = " ".join(f"{key}={value}" for key, value in sorted(structured_fields(record).items()))
        line = f"{record.levelname:<7} {record.name} {record.getMessage()} correlation_id={getattr(record, 'correlation_id', None)}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_process_configured", False):
        return

    settings = get_settings()
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    if os.getenv("LOG_FORMAT", "json").lower() == "text":
        handler.setFormatter(TextLogFormatter())
    else:
        handler.setFormatter(JsonLogFormatter(service=settings.app_name, environment=settings.app_env))
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._process_configured = True  # type: ignore[attr-defined]
