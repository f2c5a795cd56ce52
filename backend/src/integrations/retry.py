"""Retry policy shared by the sync orchestrator, token guard and gateway.

Only ProviderUnavailableError (and its RateLimitError subclass) is retried.
A provider Retry-After is honored as the minimum wait, and no retry is
started if its delay would cross the caller's deadline.
"""

import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

from .errors import ProviderUnavailableError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: bool = True

    def with_max_attempts(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max(1, max_attempts))

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
    log_context: Optional[dict] = None,
) -> T:
    """Call func, retrying transient provider failures with exponential backoff.

    Args:
        func: Zero-argument callable performing the provider call
        policy: Attempts and backoff parameters
        deadline: Monotonic time after which no retry is started
        sleep: Sleep function (injected in tests)
        monotonic: Monotonic clock (injected in tests)
        log_context: Extra fields for retry log lines

    Raises:
        The last ProviderUnavailableError once attempts are exhausted, and any
        other exception immediately.
    """
    attempt = 1
    while True:
        try:
            return func()
        except ProviderUnavailableError as exc:
            if attempt >= max(policy.max_attempts, 1):
                raise
            retry_after = exc.retry_after if isinstance(exc, RateLimitError) else None
            delay = policy.delay_for(attempt, retry_after)
            if deadline is not None and monotonic() + delay >= deadline:
                raise
            logger.warning(
                f"Transient provider failure, retrying in {delay:.2f}s: {exc}",
                extra={**(log_context or {}), "attempt": attempt, "retry_delay_s": round(delay, 3)},
            )
            sleep(delay)
            attempt += 1
