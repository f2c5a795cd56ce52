"""
Sync Orchestrator - one bounded SyncOperation per request

Flow:
1. Reject with ConflictError if the connection already has a sync in flight
2. Resolve entity types (request, connection settings, service default)
3. Pull each entity type page by page through the Token Refresh Guard,
   retrying transient failures; one entity type's failure does not stop
   the others
4. Aggregate into SUCCESS / PARTIAL_FAILURE / FAILED, update the connection
5. Publish sync.completed

Cancellation (connection deleted or revoked) is checked between entity types
and between pages, never mid-call. The operation timeout marks the remaining
entity types failed with "timeout"; an operation is never left non-terminal.
A stored operation left behind by a crashed worker is finalized with
"timeout" by the next request once it is older than the timeout.
"""

import logging
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from observability.correlation import correlation_scope
from observability.metrics import (
    sync_conflicts_total,
    sync_duration_seconds,
    sync_operations_total,
    sync_records_total,
    syncs_in_flight,
)
from .connection_manager import ConnectionManager
from .coordination import SyncCoordinator
from .domain import (
    Connection,
    ConnectionStatus,
    EntityResult,
    EntityResultStatus,
    EntityType,
    SyncOperation,
    SyncRequest,
    SyncStatus,
    SyncWindow,
    utcnow,
)
from .errors import ConflictError, IntegrationError, ValidationError
from .events import CanonicalEvent, CanonicalEventType, EventPublisher, safe_publish
from .freshness import FreshnessGuard, freshness_key
from .ports import ProviderAdapter, SyncPage, SyncRecord
from .registry import AdapterRegistry
from .retry import RetryPolicy, call_with_retry
from .storage import SyncOperationRepository

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
TIMEOUT = "timeout"


def aggregate_status(requested: Sequence[EntityType], results: dict[EntityType, EntityResult]) -> SyncStatus:
    """FAILED iff no entity type succeeded, SUCCESS iff all did, else PARTIAL_FAILURE."""
    succeeded = sum(
        1 for entity_type in requested
        if entity_type in results and results[entity_type].status == EntityResultStatus.SUCCESS
    )
    if succeeded == 0:
        return SyncStatus.FAILED
    if succeeded == len(requested):
        return SyncStatus.SUCCESS
    return SyncStatus.PARTIAL_FAILURE


def _parse_entity_types(values: Iterable) -> tuple[EntityType, ...]:
    resolved: list[EntityType] = []
    for value in values:
        try:
            entity_type = EntityType(value)
        except ValueError as e:
            raise ValidationError(f"Unknown entity type: {value}") from e
        if entity_type not in resolved:
            resolved.append(entity_type)
    return tuple(resolved)


class SyncOrchestrator:
    """Runs sync requests for connections.

    Usage:
        orchestrator = SyncOrchestrator(manager, registry, sync_repo, publisher, coordinator)
        operation = orchestrator.request_sync(SyncRequest(connection_id, (EntityType.LOADS,)))
    """

    MAX_PAGES_PER_ENTITY = 1000

    def __init__(
        self,
        manager: ConnectionManager,
        registry: AdapterRegistry,
        sync_repository: SyncOperationRepository,
        publisher: EventPublisher,
        coordinator: SyncCoordinator,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        operation_timeout_seconds: float = 300.0,
        default_entity_types: Sequence[EntityType] = tuple(EntityType),
        default_window_days: int = 7,
        freshness_guard: Optional[FreshnessGuard] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._manager = manager
        self._registry = registry
        self._sync_repository = sync_repository
        self._publisher = publisher
        self._coordinator = coordinator
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = operation_timeout_seconds
        self._default_entity_types = tuple(default_entity_types)
        self._default_window_days = default_window_days
        self._freshness = freshness_guard
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def request_sync(self, request: SyncRequest) -> SyncOperation:
        """Run one sync operation to completion.

        Returns:
            The terminal SyncOperation

        Raises:
            NotFoundError: Unknown connection_id
            ValidationError: Connection not ACTIVE, unknown entity type or
                inverted window
            ConflictError: A sync is already in flight for the connection
        """
        connection = self._manager.get(request.connection_id)
        provider = connection.provider_type.value
        if connection.status != ConnectionStatus.ACTIVE:
            raise ValidationError(
                f"Connection {connection.connection_id} is {connection.status.value}; only ACTIVE connections sync"
            )
        entity_types = self._resolve_entity_types(request, connection)
        window = self._resolve_window(request)

        cancel_flag = self._coordinator.try_begin(connection.connection_id)
        if cancel_flag is None:
            sync_conflicts_total.labels(provider=provider).inc()
            raise ConflictError(f"A sync is already in progress for connection {connection.connection_id}")

        try:
            active = self._sync_repository.find_active(connection.connection_id)
            if active is not None and not self._expire_abandoned(active):
                sync_conflicts_total.labels(provider=provider).inc()
                raise ConflictError(
                    f"Sync {active.sync_id} is already in progress for connection {connection.connection_id}"
                )

            operation = SyncOperation(
                sync_id=str(uuid.uuid4()),
                connection_id=connection.connection_id,
                entity_types=entity_types,
                status=SyncStatus.REQUESTED,
                force=request.force,
                window=window,
                started_at=self._clock(),
            )
            try:
                self._sync_repository.put(operation)
            except ConflictError:
                sync_conflicts_total.labels(provider=provider).inc()
                raise

            syncs_in_flight.inc()
            try:
                with correlation_scope(operation.sync_id):
                    return self._run(connection, operation, cancel_flag)
            finally:
                syncs_in_flight.dec()
        finally:
            self._coordinator.end(connection.connection_id)

    def _expire_abandoned(self, active: SyncOperation) -> bool:
        """Finalize a stored non-terminal operation older than the timeout.

        Only called while this process holds the connection's in-flight flag,
        so the operation belongs to another worker. A live worker finalizes
        within the timeout; anything older was left behind by a crash.

        Returns:
            True if the operation was finalized and no longer blocks a new sync
        """
        if active.started_at is None:
            return False
        if active.started_at + timedelta(seconds=self._timeout) > self._clock():
            return False

        results = dict(active.entity_results)
        for entity_type in active.entity_types:
            if entity_type not in results:
                results[entity_type] = EntityResult(EntityResultStatus.FAILED, 0, TIMEOUT)
        try:
            self._sync_repository.put(replace(
                active,
                status=SyncStatus.FAILED,
                entity_results=results,
                error_message=TIMEOUT,
                completed_at=self._clock(),
            ))
        except ConflictError:
            # Finalized by its owner in the meantime.
            pass
        logger.warning(
            "Finalized abandoned sync operation",
            extra={"sync_id": active.sync_id, "connection_id": active.connection_id},
        )
        return True

    def _resolve_entity_types(self, request: SyncRequest, connection: Connection) -> tuple[EntityType, ...]:
        if request.entity_types:
            entity_types = _parse_entity_types(request.entity_types)
        else:
            configured = connection.settings.get("sync_entities")
            if isinstance(configured, str):
                configured = [part.strip() for part in configured.split(",") if part.strip()]
            entity_types = _parse_entity_types(configured or self._default_entity_types)
        if not entity_types:
            raise ValidationError("At least one entity type must be requested")
        return entity_types

    def _resolve_window(self, request: SyncRequest) -> SyncWindow:
        if request.force:
            return SyncWindow()
        if request.start_date and request.end_date and request.start_date >= request.end_date:
            raise ValidationError("start_date must be before end_date")
        if request.start_date is None and request.end_date is None:
            return SyncWindow(start=self._clock() - timedelta(days=self._default_window_days))
        return SyncWindow(start=request.start_date, end=request.end_date)

    def _run(self, connection: Connection, operation: SyncOperation, cancel_flag: threading.Event) -> SyncOperation:
        operation = replace(operation, status=SyncStatus.IN_PROGRESS)
        self._sync_repository.put(operation)
        adapter = self._registry.get(connection.provider_type)
        started = self._monotonic()
        deadline = started + self._timeout
        log_extra = {
            "sync_id": operation.sync_id,
            "connection_id": connection.connection_id,
            "provider_type": connection.provider_type.value,
        }
        logger.info(f"Sync started for {', '.join(e.value for e in operation.entity_types)}", extra=log_extra)

        results: dict[EntityType, EntityResult] = {}
        stop_reason = None
        try:
            for entity_type in operation.entity_types:
                if cancel_flag.is_set():
                    stop_reason = CANCELLED
                    break
                if self._monotonic() >= deadline:
                    stop_reason = TIMEOUT
                    break
                results[entity_type] = self._sync_entity(
                    connection, adapter, operation, entity_type, deadline, cancel_flag
                )
        except Exception as exc:
            logger.error(f"Sync aborted by unexpected error: {exc}", extra=log_extra, exc_info=True)
            self._finalize(connection, operation, results, started, failure=f"internal error: {exc}")
            raise

        if stop_reason is None and cancel_flag.is_set():
            stop_reason = CANCELLED
        return self._finalize(connection, operation, results, started, stop_reason=stop_reason)

    def _sync_entity(
        self,
        connection: Connection,
        adapter: ProviderAdapter,
        operation: SyncOperation,
        entity_type: EntityType,
        deadline: float,
        cancel_flag: threading.Event,
    ) -> EntityResult:
        log_extra = {
            "sync_id": operation.sync_id,
            "connection_id": connection.connection_id,
            "provider_type": connection.provider_type.value,
            "entity_type": entity_type.value,
        }
        processed = 0
        stale = 0
        cursor = None
        try:
            for _ in range(self.MAX_PAGES_PER_ENTITY):
                if self._monotonic() >= deadline:
                    return EntityResult(EntityResultStatus.FAILED, processed, TIMEOUT, stale)
                if cancel_flag.is_set():
                    return EntityResult(EntityResultStatus.FAILED, processed, CANCELLED, stale)

                page = self._fetch_page(connection, adapter, entity_type, operation.window, cursor, deadline, log_extra)
                for record in page.records:
                    processed += 1
                    if not self._apply(connection, operation, entity_type, record):
                        stale += 1
                cursor = page.next_cursor
                if not cursor:
                    break
            else:
                logger.warning("Stopped paging at page limit", extra=log_extra)
        except IntegrationError as exc:
            logger.warning(f"Entity sync failed: {exc}", extra=log_extra)
            return EntityResult(EntityResultStatus.FAILED, processed, exc.message, stale)

        logger.info(f"Synced {processed} {entity_type.value} ({stale} stale)", extra=log_extra)
        return EntityResult(EntityResultStatus.SUCCESS, processed, None, stale)

    def _fetch_page(
        self,
        connection: Connection,
        adapter: ProviderAdapter,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str],
        deadline: float,
        log_extra: dict,
    ) -> SyncPage:
        def attempt() -> SyncPage:
            remaining = max(0.0, deadline - self._monotonic())
            with self._coordinator.provider_slot(connection.provider_type.value, timeout=remaining):
                return self._manager.token_guard.call(
                    connection,
                    lambda fresh: adapter.sync_entity(fresh, entity_type, window, cursor),
                )

        return call_with_retry(
            attempt,
            policy=self._retry_policy.with_max_attempts(adapter.retry_attempts),
            deadline=deadline,
            sleep=self._sleep,
            monotonic=self._monotonic,
            log_context=log_extra,
        )

    def _apply(
        self,
        connection: Connection,
        operation: SyncOperation,
        entity_type: EntityType,
        record: SyncRecord,
    ) -> bool:
        """Publish one record unless a newer update was already applied."""
        provider = connection.provider_type.value
        if record.source_updated_at is not None and self._freshness is not None:
            key = freshness_key(connection.connection_id, entity_type.value, record.external_id)
            if not self._freshness.check_and_set(key, record.source_updated_at):
                sync_records_total.labels(provider=provider, entity_type=entity_type.value, result="stale").inc()
                return False

        sync_records_total.labels(provider=provider, entity_type=entity_type.value, result="applied").inc()
        safe_publish(self._publisher, CanonicalEvent(
            event_type=CanonicalEventType.ENTITY_SYNCED,
            connection_id=connection.connection_id,
            provider_type=provider,
            occurred_at=record.source_updated_at or self._clock(),
            payload={
                "sync_id": operation.sync_id,
                "entity_type": entity_type.value,
                "external_id": record.external_id,
                "data": record.data,
            },
        ))
        return True

    def _finalize(
        self,
        connection: Connection,
        operation: SyncOperation,
        results: dict[EntityType, EntityResult],
        started: float,
        *,
        stop_reason: Optional[str] = None,
        failure: Optional[str] = None,
    ) -> SyncOperation:
        results = dict(results)
        reason = failure or stop_reason
        for entity_type in operation.entity_types:
            if entity_type not in results:
                results[entity_type] = EntityResult(EntityResultStatus.FAILED, 0, reason or "not run")

        entity_errors = "; ".join(
            f"{entity_type.value}: {result.error}"
            for entity_type, result in results.items()
            if result.status == EntityResultStatus.FAILED
        ) or None

        if failure is not None:
            status, error_message = SyncStatus.FAILED, failure
        elif stop_reason == CANCELLED:
            status, error_message = SyncStatus.FAILED, CANCELLED
        else:
            status, error_message = aggregate_status(operation.entity_types, results), entity_errors

        completed_at = self._clock()
        final = replace(
            operation,
            status=status,
            entity_results=results,
            error_message=error_message,
            completed_at=completed_at,
        )
        try:
            self._sync_repository.put(final)
        except ConflictError:
            logger.warning("Sync operation was finalized elsewhere", extra={"sync_id": operation.sync_id})

        any_succeeded = any(r.status == EntityResultStatus.SUCCESS for r in results.values())
        self._manager.record_sync_result(
            connection.connection_id,
            any_succeeded=any_succeeded,
            error_message=entity_errors if failure is None else failure,
            completed_at=completed_at,
        )

        provider = connection.provider_type.value
        sync_operations_total.labels(provider=provider, status=status.value).inc()
        sync_duration_seconds.labels(provider=provider).observe(max(0.0, self._monotonic() - started))
        logger.info(
            f"Sync finished with {status.value}",
            extra={
                "sync_id": operation.sync_id,
                "connection_id": connection.connection_id,
                "provider_type": provider,
                "status": status.value,
            },
        )
        safe_publish(self._publisher, CanonicalEvent(
            event_type=CanonicalEventType.SYNC_COMPLETED,
            connection_id=connection.connection_id,
            provider_type=provider,
            occurred_at=completed_at,
            payload={
                "sync_id": operation.sync_id,
                "status": status.value,
                "entity_results": {e.value: r.to_dict() for e, r in results.items()},
                "error_message": error_message,
            },
        ))
        return final
