"""Observability: structured logging, correlation ids and Prometheus metrics."""

from .correlation import correlation_scope, get_correlation_id, set_correlation_id
from .logging_config import configure_logging, redact

__all__ = [
    "configure_logging",
    "correlation_scope",
    "get_correlation_id",
    "redact",
    "set_correlation_id",
]
