"""Structured JSON logging configuration.

Provides centralized logging setup with correlation ids, JSON formatting
and redaction of secret material in structured extras.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "password",
    "secret",
    "api_key",
    "key",
    "private_key",
    "client_secret",
    "webhook_secret",
    "auth_token",
    "authorization",
})

# Extra fields copied onto JSON log lines when present
CONTEXT_FIELDS = (
    "connection_id",
    "provider_type",
    "sync_id",
    "entity_type",
    "event_type",
    "event_id",
    "status",
    "from_status",
    "to_status",
    "attempt",
    "retry_delay_s",
    "latency_ms",
    "operation",
    "outcome",
    "dedup_key",
    "duration_ms",
    "retry_count",
    "error",
)

REDACTED = "***"


def redact(value: Any) -> Any:
    """Recursively mask values stored under sensitive keys."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in SENSITIVE_KEYS and v is not None else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class CorrelationIDFilter(logging.Filter):
    """Add correlation_id to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", "no-correlation-id"),
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = str(record.exc_info[1])
            log_data["traceback"] = self.formatException(record.exc_info)

        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = redact(getattr(record, field_name))

        if hasattr(record, "payload"):
            log_data["payload"] = redact(record.payload)

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, use JSON formatter; otherwise use simple format
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(correlation_id)s - %(name)s - %(message)s'
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIDFilter())
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
