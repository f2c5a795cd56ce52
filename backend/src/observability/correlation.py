"""Correlation id management.

A correlation id ties together the log lines of one webhook delivery,
sync operation or background task, including across thread pools that
copy the context.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation id, or "no-correlation-id" if not set."""
    return correlation_id_var.get() or "no-correlation-id"


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a block.

    Usage:
        with correlation_scope(sync_id):
            orchestrator.run(...)
    """
    value = correlation_id or generate_correlation_id()
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)
