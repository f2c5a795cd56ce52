"""
In-process coordination for syncs and webhook ordering

SyncCoordinator holds:
- the in-flight marker and cancellation flag of each connection's sync
- one bounded semaphore per provider_type limiting concurrent provider calls
- one FIFO lock per connection serializing webhook processing

Cross-process exclusion of syncs comes from the sync_operation table's
partial unique index; this class covers the threads of one process.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


class FifoLock:
    """Ticket lock: waiters acquire in the order they arrived."""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._now_serving != ticket:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._now_serving += 1
            self._cond.notify_all()

    def __enter__(self) -> "FifoLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


class SyncCoordinator:
    """Process-wide sync bookkeeping shared by the manager and orchestrator."""

    def __init__(self, provider_concurrency_limit: int = 4):
        if provider_concurrency_limit < 1:
            raise ValueError("provider_concurrency_limit must be at least 1")
        self._limit = provider_concurrency_limit
        self._lock = threading.Lock()
        self._in_flight: dict[str, threading.Event] = {}
        self._provider_slots: dict[str, threading.BoundedSemaphore] = {}
        self._connection_locks: dict[str, FifoLock] = {}

    def try_begin(self, connection_id: str) -> Optional[threading.Event]:
        """Mark a sync in flight.

        Returns:
            The cancellation flag for the new sync, or None if one is
            already running for this connection
        """
        with self._lock:
            if connection_id in self._in_flight:
                return None
            cancel_flag = threading.Event()
            self._in_flight[connection_id] = cancel_flag
            return cancel_flag

    def end(self, connection_id: str) -> None:
        with self._lock:
            self._in_flight.pop(connection_id, None)

    def cancel(self, connection_id: str) -> bool:
        """Request cooperative cancellation. Returns True if a sync was running."""
        with self._lock:
            cancel_flag = self._in_flight.get(connection_id)
        if cancel_flag is None:
            return False
        cancel_flag.set()
        logger.info("Cancellation requested for in-flight sync", extra={"connection_id": connection_id})
        return True

    def is_in_flight(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._in_flight

    @contextmanager
    def provider_slot(self, provider_type: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold one of the provider's concurrent call slots.

        Raises:
            ProviderUnavailableError: No slot freed up within timeout seconds
        """
        with self._lock:
            slot = self._provider_slots.get(provider_type)
            if slot is None:
                slot = threading.BoundedSemaphore(self._limit)
                self._provider_slots[provider_type] = slot
        if not slot.acquire(timeout=timeout):
            raise ProviderUnavailableError(
                f"No free {provider_type} call slot within {timeout:.1f}s",
                provider_type=provider_type,
            )
        try:
            yield
        finally:
            slot.release()

    def connection_lock(self, connection_id: str) -> FifoLock:
        with self._lock:
            lock = self._connection_locks.get(connection_id)
            if lock is None:
                lock = FifoLock()
                self._connection_locks[connection_id] = lock
            return lock

    def forget(self, connection_id: str) -> None:
        """Drop per-connection state after the connection is deleted."""
        with self._lock:
            self._connection_locks.pop(connection_id, None)
