"""
ProviderGateway - single-call operations through a connection

ELD reads (hours of service, logs, location) and TMS writes (push load,
update load status) resolve the connection, go through the Token Refresh
Guard and the provider concurrency limit, and retry transient failures with
the shared policy.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional, TypeVar

from .connection_manager import ConnectionManager
from .coordination import SyncCoordinator
from .domain import Connection, ConnectionStatus, DriverHOS, DriverLocation, HOSLogEntry, Load, LoadStatus
from .errors import ValidationError
from .ports import ProviderAdapter
from .registry import AdapterRegistry
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderGateway:
    def __init__(
        self,
        manager: ConnectionManager,
        registry: AdapterRegistry,
        coordinator: SyncCoordinator,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._manager = manager
        self._registry = registry
        self._coordinator = coordinator
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def get_driver_hos(self, connection_id: str, driver_id: str) -> DriverHOS:
        """Current HOS for an internal driver id, mapped to the provider's id."""
        return self._invoke(
            connection_id,
            "driver_hos",
            lambda adapter, conn: adapter.get_driver_hos(conn, conn.provider_driver_id(driver_id)),
        )

    def get_driver_hos_logs(self, connection_id: str, driver_id: str, start: datetime, end: datetime) -> list[HOSLogEntry]:
        if start >= end:
            raise ValidationError("start must be before end")
        return self._invoke(
            connection_id,
            "driver_hos_logs",
            lambda adapter, conn: adapter.get_driver_hos_logs(conn, conn.provider_driver_id(driver_id), start, end),
        )

    def get_driver_location(self, connection_id: str, driver_id: str) -> DriverLocation:
        return self._invoke(
            connection_id,
            "driver_location",
            lambda adapter, conn: adapter.get_driver_location(conn, conn.provider_driver_id(driver_id)),
        )

    def push_load(self, connection_id: str, load: Load) -> bool:
        return self._invoke(connection_id, "push_load", lambda adapter, conn: adapter.push_load(conn, load))

    def update_load_status(self, connection_id: str, load_id: str, status: LoadStatus) -> bool:
        return self._invoke(
            connection_id,
            "update_load_status",
            lambda adapter, conn: adapter.update_load_status(conn, load_id, status),
        )

    def _invoke(self, connection_id: str, operation: str, fn: Callable[[ProviderAdapter, Connection], T]) -> T:
        """
        Raises:
            NotFoundError: Unknown connection
            ValidationError: Connection not ACTIVE or operation unsupported
            AuthenticationError: Credential rejected (status already updated)
            ProviderUnavailableError: Retries exhausted
        """
        connection = self._manager.get(connection_id)
        if connection.status != ConnectionStatus.ACTIVE:
            raise ValidationError(f"Connection {connection_id} is {connection.status.value}")
        adapter = self._registry.get(connection.provider_type)
        provider = connection.provider_type.value

        def attempt() -> T:
            with self._coordinator.provider_slot(provider):
                return self._manager.token_guard.call(connection, lambda fresh: fn(adapter, fresh))

        result = call_with_retry(
            attempt,
            policy=self._retry_policy.with_max_attempts(adapter.retry_attempts),
            sleep=self._sleep,
            log_context={"connection_id": connection_id, "provider_type": provider, "operation": operation},
        )
        logger.debug(f"{operation} completed", extra={"connection_id": connection_id, "provider_type": provider})
        return result
