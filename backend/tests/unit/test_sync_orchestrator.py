"""Unit tests for sync operations."""

from datetime import timedelta

import pytest

from conftest import make_api_key_params
from integrations.coordination import SyncCoordinator
from integrations.domain import (
    ConnectionStatus,
    EntityResult,
    EntityResultStatus,
    EntityType,
    SyncOperation,
    SyncRequest,
    SyncStatus,
    SyncWindow,
)
from integrations.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from integrations.events import CanonicalEventType
from integrations.freshness import freshness_key
from integrations.ports import SyncPage, SyncRecord
from integrations.sync_orchestrator import aggregate_status

LOADS_AND_DRIVERS = (EntityType.LOADS, EntityType.DRIVERS)


def page(*ids, updated_at=None):
    return SyncPage(records=[SyncRecord(external_id=i, data={"id": i}, source_updated_at=updated_at) for i in ids])


def scripted(*outcomes):
    """Page factory returning or raising the given outcomes on successive fetches."""
    queue = list(outcomes)

    def fetch():
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return fetch


class TestAggregateStatus:
    """Test derivation of the operation status from entity results."""

    def test_all_succeeded(self):
        results = {e: EntityResult(EntityResultStatus.SUCCESS) for e in LOADS_AND_DRIVERS}
        assert aggregate_status(LOADS_AND_DRIVERS, results) == SyncStatus.SUCCESS

    def test_some_failed(self):
        results = {
            EntityType.LOADS: EntityResult(EntityResultStatus.SUCCESS),
            EntityType.DRIVERS: EntityResult(EntityResultStatus.FAILED, error="boom"),
        }
        assert aggregate_status(LOADS_AND_DRIVERS, results) == SyncStatus.PARTIAL_FAILURE

    def test_none_succeeded(self):
        results = {e: EntityResult(EntityResultStatus.FAILED) for e in LOADS_AND_DRIVERS}
        assert aggregate_status(LOADS_AND_DRIVERS, results) == SyncStatus.FAILED

    def test_missing_result_counts_as_failed(self):
        results = {EntityType.LOADS: EntityResult(EntityResultStatus.SUCCESS)}
        assert aggregate_status(LOADS_AND_DRIVERS, results) == SyncStatus.PARTIAL_FAILURE


class TestRequestSync:
    """Test a full sync run against the fake provider."""

    def test_successful_sync(self, services, api_key_connection, tms_adapter, publisher, clock):
        tms_adapter.pages[EntityType.LOADS] = [page("L1", "L2")]
        tms_adapter.pages[EntityType.DRIVERS] = [page("D1")]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.SUCCESS
        assert operation.entity_results[EntityType.LOADS].count_processed == 2
        assert operation.entity_results[EntityType.DRIVERS].count_processed == 1
        assert operation.completed_at == clock()
        assert services.sync_repository.get(operation.sync_id).status == SyncStatus.SUCCESS

        synced = publisher.of_type(CanonicalEventType.ENTITY_SYNCED)
        assert [e.payload["external_id"] for e in synced] == ["L1", "L2", "D1"]
        completed = publisher.of_type(CanonicalEventType.SYNC_COMPLETED)
        assert completed[-1].payload["status"] == "SUCCESS"
        assert services.manager.get(api_key_connection.connection_id).last_sync_at == clock()

    def test_one_entity_failure_does_not_stop_the_others(self, services, api_key_connection, tms_adapter, clock):
        tms_adapter.pages[EntityType.LOADS] = [page("L1", "L2", "L3")]
        tms_adapter.pages[EntityType.DRIVERS] = [ValidationError("Drivers endpoint not available")]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.PARTIAL_FAILURE
        loads = operation.entity_results[EntityType.LOADS]
        drivers = operation.entity_results[EntityType.DRIVERS]
        assert (loads.status, loads.count_processed) == (EntityResultStatus.SUCCESS, 3)
        assert drivers.status == EntityResultStatus.FAILED
        assert drivers.error == "Drivers endpoint not available"

        connection = services.manager.get(api_key_connection.connection_id)
        assert connection.last_sync_at == clock()
        assert connection.error_message == "drivers: Drivers endpoint not available"
        assert connection.status == ConnectionStatus.ACTIVE

    def test_all_entities_failing_fails_the_operation(self, services, api_key_connection, tms_adapter):
        tms_adapter.pages[EntityType.LOADS] = [ValidationError("no loads")]
        tms_adapter.pages[EntityType.DRIVERS] = [ValidationError("no drivers")]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.FAILED
        assert services.manager.get(api_key_connection.connection_id).last_sync_at is None

    def test_pages_are_followed(self, services, api_key_connection, tms_adapter):
        tms_adapter.pages[EntityType.LOADS] = [page("L1"), page("L2"), page("L3")]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        )

        assert operation.entity_results[EntityType.LOADS].count_processed == 3
        assert len([c for c in tms_adapter.calls if c[0] == "sync_entity"]) == 3

    def test_transient_failure_is_retried(self, services, api_key_connection, tms_adapter, ticker):
        tms_adapter.pages[EntityType.LOADS] = [scripted(ProviderUnavailableError("502"), page("L1"))]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        )

        assert operation.status == SyncStatus.SUCCESS
        assert len(ticker.sleeps) == 1

    def test_connection_level_auth_failure_is_recorded(self, services, api_key_connection, tms_adapter):
        tms_adapter.pages[EntityType.LOADS] = [AuthenticationError("Invalid API key")]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        )

        assert operation.status == SyncStatus.FAILED
        assert services.manager.get(api_key_connection.connection_id).status == ConnectionStatus.ERROR

    def test_refresh_happens_before_fetch(self, services, oauth_connection, eld_adapter, clock):
        clock.advance(minutes=58)
        eld_adapter.pages[EntityType.DRIVERS] = [page("D1")]

        operation = services.orchestrator.request_sync(
            SyncRequest(oauth_connection.connection_id, (EntityType.DRIVERS,))
        )

        assert operation.status == SyncStatus.SUCCESS
        names = [c[0] for c in eld_adapter.calls]
        assert names.index("refresh_token") < names.index("sync_entity")
        assert eld_adapter.seen_tokens[-1] == "refreshed-token"
        assert services.vault.read(oauth_connection.connection_id).access_token == "refreshed-token"


class TestSyncPreconditions:
    """Test requests rejected before any provider call."""

    def test_unknown_connection(self, services):
        with pytest.raises(NotFoundError):
            services.orchestrator.request_sync(SyncRequest("missing"))

    def test_inactive_connection_is_rejected(self, services, api_key_connection):
        services.manager.transition(api_key_connection.connection_id, ConnectionStatus.ERROR, "broken")
        with pytest.raises(ValidationError, match="only ACTIVE connections sync"):
            services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id))

    def test_inverted_window_is_rejected(self, services, api_key_connection, clock):
        with pytest.raises(ValidationError, match="start_date must be before end_date"):
            services.orchestrator.request_sync(SyncRequest(
                api_key_connection.connection_id,
                start_date=clock(),
                end_date=clock() - timedelta(days=1),
            ))

    def test_unknown_entity_type_is_rejected(self, services, api_key_connection):
        with pytest.raises(ValidationError, match="Unknown entity type"):
            services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id, ("invoices",)))


class TestSyncExclusion:
    """Test the single in-flight sync rule."""

    def test_concurrent_request_conflicts(self, services, api_key_connection, tms_adapter):
        conflicts = []

        def nested_request():
            try:
                services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id))
            except ConflictError as exc:
                conflicts.append(exc)
            return page("L1")

        tms_adapter.pages[EntityType.LOADS] = [nested_request]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        )

        assert len(conflicts) == 1
        assert operation.status == SyncStatus.SUCCESS
        assert len(services.sync_repository.list_for_connection(api_key_connection.connection_id)) == 1

    def test_persisted_active_operation_conflicts(self, services, api_key_connection, clock):
        services.sync_repository.put(SyncOperation(
            sync_id="other-worker",
            connection_id=api_key_connection.connection_id,
            entity_types=(EntityType.LOADS,),
            status=SyncStatus.IN_PROGRESS,
            started_at=clock(),
        ))

        with pytest.raises(ConflictError, match="other-worker"):
            services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id))
        assert not services.coordinator.is_in_flight(api_key_connection.connection_id)

    def test_operation_left_by_crashed_worker_is_finalized(self, services, api_key_connection, clock):
        """An IN_PROGRESS row older than the operation timeout no longer blocks."""
        services.sync_repository.put(SyncOperation(
            sync_id="crashed",
            connection_id=api_key_connection.connection_id,
            entity_types=LOADS_AND_DRIVERS,
            status=SyncStatus.IN_PROGRESS,
            entity_results={EntityType.LOADS: EntityResult(EntityResultStatus.SUCCESS, 3)},
            started_at=clock(),
        ))
        clock.advance(minutes=6)

        operation = services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id))

        assert operation.status == SyncStatus.SUCCESS
        crashed = services.sync_repository.get("crashed")
        assert crashed.status == SyncStatus.FAILED
        assert crashed.error_message == "timeout"
        assert crashed.entity_results[EntityType.LOADS].status == EntityResultStatus.SUCCESS
        assert crashed.entity_results[EntityType.DRIVERS] == EntityResult(EntityResultStatus.FAILED, 0, "timeout")
        assert crashed.completed_at == clock()

    def test_next_sync_allowed_after_completion(self, services, api_key_connection):
        request = SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        first = services.orchestrator.request_sync(request)
        second = services.orchestrator.request_sync(request)
        assert first.sync_id != second.sync_id


class TestSyncTermination:
    """Test timeout and cancellation."""

    def test_timeout_fails_remaining_entities(self, services, api_key_connection, tms_adapter, ticker):
        def slow_page():
            ticker.value += 400
            return page("L1")

        tms_adapter.pages[EntityType.LOADS] = [slow_page]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.PARTIAL_FAILURE
        assert operation.entity_results[EntityType.LOADS].status == EntityResultStatus.SUCCESS
        assert operation.entity_results[EntityType.DRIVERS].error == "timeout"

    def test_cancellation_fails_the_operation(self, services, api_key_connection, tms_adapter):
        def cancel_then_page():
            services.coordinator.cancel(api_key_connection.connection_id)
            return page("L1")

        tms_adapter.pages[EntityType.LOADS] = [cancel_then_page]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.FAILED
        assert operation.error_message == "cancelled"
        assert operation.entity_results[EntityType.DRIVERS].error == "cancelled"
        assert not services.coordinator.is_in_flight(api_key_connection.connection_id)

    def test_revocation_during_sync_cancels_it(self, services, api_key_connection, tms_adapter):
        def revoke_then_page():
            services.manager.revoke(api_key_connection.connection_id)
            return page("L1")

        tms_adapter.pages[EntityType.LOADS] = [revoke_then_page]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, LOADS_AND_DRIVERS)
        )

        assert operation.status == SyncStatus.FAILED
        assert services.manager.get(api_key_connection.connection_id).status == ConnectionStatus.REVOKED


class TestSyncInputs:
    """Test entity type, window and freshness handling."""

    def test_entity_types_from_connection_settings(self, services):
        connection = services.manager.create(make_api_key_params(settings={"sync_entities": "drivers"}))

        operation = services.orchestrator.request_sync(SyncRequest(connection.connection_id))

        assert operation.entity_types == (EntityType.DRIVERS,)

    def test_service_default_entity_types(self, services, api_key_connection):
        operation = services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id))
        assert operation.entity_types == tuple(EntityType)

    def test_default_window_is_last_seven_days(self, services, api_key_connection, tms_adapter, clock):
        services.orchestrator.request_sync(SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,)))

        window = tms_adapter.calls[-1][2]
        assert window == SyncWindow(start=clock() - timedelta(days=7))

    def test_force_requests_full_snapshot(self, services, api_key_connection, tms_adapter, clock):
        operation = services.orchestrator.request_sync(SyncRequest(
            api_key_connection.connection_id,
            (EntityType.LOADS,),
            force=True,
            start_date=clock() - timedelta(days=1),
        ))

        assert operation.window.is_open
        assert operation.force

    def test_stale_records_are_not_published(self, services, api_key_connection, tms_adapter, publisher, clock):
        newer = clock() - timedelta(minutes=1)
        older = clock() - timedelta(hours=1)
        services.freshness_guard.check_and_set(
            freshness_key(api_key_connection.connection_id, "loads", "L1"), newer
        )
        tms_adapter.pages[EntityType.LOADS] = [page("L1", updated_at=older)]

        operation = services.orchestrator.request_sync(
            SyncRequest(api_key_connection.connection_id, (EntityType.LOADS,))
        )

        result = operation.entity_results[EntityType.LOADS]
        assert (result.count_processed, result.skipped_stale) == (1, 1)
        assert publisher.of_type(CanonicalEventType.ENTITY_SYNCED) == []


class TestProviderSlots:
    """Test the per-provider concurrency limit."""

    def test_wait_for_slot_is_bounded(self):
        coordinator = SyncCoordinator(provider_concurrency_limit=1)

        with coordinator.provider_slot("samsara"):
            with pytest.raises(ProviderUnavailableError, match="No free samsara call slot"):
                with coordinator.provider_slot("samsara", timeout=0.01):
                    pass

    def test_slot_is_released_when_call_fails(self):
        coordinator = SyncCoordinator(provider_concurrency_limit=1)

        with pytest.raises(RuntimeError):
            with coordinator.provider_slot("mcleod"):
                raise RuntimeError("boom")

        with coordinator.provider_slot("mcleod", timeout=0.01):
            pass

    def test_providers_have_separate_limits(self):
        coordinator = SyncCoordinator(provider_concurrency_limit=1)

        with coordinator.provider_slot("samsara"):
            with coordinator.provider_slot("mcleod", timeout=0.01):
                pass
