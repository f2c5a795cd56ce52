"""Tests for the worker sweeps and task wrappers (no broker needed)."""

import json
from unittest.mock import patch

import pytest
from celery.exceptions import Retry

from conftest import WEBHOOK_SECRET, make_api_key_params, make_oauth_params
from integrations.domain import ConnectionStatus, EntityType, ProviderType, SyncOperation, SyncStatus
from integrations.errors import AuthenticationError, ProviderUnavailableError
from webhooks.normalizer import WebhookEvent
from webhooks.signatures import compute_signature
from workers.integration_tasks import (
    process_webhook_message,
    process_webhook_task,
    refresh_expiring_tokens,
    run_scheduled_syncs,
    validate_connection_task,
    validate_pending_connection,
    validate_pending_connections,
)


def webhook_message(clock, event_id="evt-1"):
    body = json.dumps({
        "eventType": "vehicle.location",
        "eventId": event_id,
        "orgId": "acct-1",
        "eventTime": "2026-03-02T11:59:00Z",
        "entityId": "truck-7",
        "data": {"latitude": 41.88, "longitude": -87.63},
    }).encode("utf-8")
    event = WebhookEvent(
        provider_type=ProviderType.SAMSARA,
        raw_payload=body,
        signature="sha256=" + compute_signature(WEBHOOK_SECRET, body),
        received_at=clock(),
    )
    return event.to_message()


class TestProcessWebhookMessage:
    """Test queued webhook processing."""

    def test_message_is_normalized(self, services, oauth_connection, clock):
        result = process_webhook_message(services, webhook_message(clock))

        assert result == {
            "status": "completed",
            "outcome": "published",
            "provider_type": "samsara",
            "connection_id": oauth_connection.connection_id,
        }

    def test_redelivery_is_a_duplicate(self, services, oauth_connection, clock):
        message = webhook_message(clock)
        process_webhook_message(services, message)

        assert process_webhook_message(services, message)["outcome"] == "duplicate"

    def test_task_uses_process_services(self, services, oauth_connection, clock):
        with patch("workers.integration_tasks.get_integration_services", return_value=services):
            result = process_webhook_task(webhook_message(clock))

        assert result["outcome"] == "published"


class TestValidatePendingConnection:
    """Test background validation of PENDING connections."""

    def test_pending_becomes_active(self, services, clock, eld_adapter):
        eld_adapter.test_results = [False]
        connection = services.manager.create(make_oauth_params(clock))

        result = validate_pending_connection(services, connection.connection_id)

        assert result == {"status": "completed", "connection_id": connection.connection_id, "valid": True}
        assert services.manager.get(connection.connection_id).status == ConnectionStatus.ACTIVE

    def test_transient_failure_is_raised_for_retry(self, services, clock, eld_adapter):
        eld_adapter.test_results = [False]
        connection = services.manager.create(make_oauth_params(clock))
        eld_adapter.test_results = [ProviderUnavailableError("down")] * 3

        with pytest.raises(ProviderUnavailableError):
            validate_pending_connection(services, connection.connection_id)

        stored = services.manager.get(connection.connection_id)
        assert stored.status == ConnectionStatus.PENDING
        assert stored.error_message == "down"

    def test_task_schedules_retry(self, services, clock, eld_adapter):
        eld_adapter.test_results = [False]
        connection = services.manager.create(make_oauth_params(clock))
        eld_adapter.test_results = [ProviderUnavailableError("down")] * 3

        with patch("workers.integration_tasks.get_integration_services", return_value=services), \
                patch.object(validate_connection_task, "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                validate_connection_task(connection.connection_id)

        retry.assert_called_once()
        assert isinstance(retry.call_args.kwargs["exc"], ProviderUnavailableError)
        assert retry.call_args.kwargs["countdown"] == 60

    def test_sweep_revalidates_pending_connections(self, services, clock, eld_adapter):
        eld_adapter.test_results = [False]
        connection = services.manager.create(make_oauth_params(clock))

        result = validate_pending_connections(services)

        assert (result["validated"], result["invalid"], result["failed"]) == (1, 0, 0)
        assert services.manager.get(connection.connection_id).status == ConnectionStatus.ACTIVE
        assert validate_pending_connections(services)["validated"] == 0

    def test_deleted_connection_is_skipped(self, services):
        result = validate_pending_connection(services, "gone")
        assert result["status"] == "skipped"
        assert result["valid"] is False


class TestRefreshExpiringTokens:
    """Test the proactive refresh sweep."""

    def test_nothing_expiring(self, services, oauth_connection):
        result = refresh_expiring_tokens(services)
        assert result["connections_checked"] == 0
        assert result["refreshed"] == 0

    def test_expiring_token_is_refreshed(self, services, oauth_connection, clock):
        clock.advance(minutes=56)

        result = refresh_expiring_tokens(services)

        assert result["connections_checked"] == 1
        assert result["refreshed"] == 1
        stored = services.manager.get(oauth_connection.connection_id)
        assert stored.oauth_credential.access_token == "refreshed-token"

    def test_failure_is_counted(self, services, oauth_connection, eld_adapter, clock):
        clock.advance(minutes=56)
        eld_adapter.refresh_results = [AuthenticationError("refresh rejected")]

        result = refresh_expiring_tokens(services)

        assert result["failed"] == 1
        assert services.manager.get(oauth_connection.connection_id).status == ConnectionStatus.EXPIRED


class TestRunScheduledSyncs:
    """Test the auto-sync sweep."""

    def test_due_connection_is_synced_once(self, services, clock):
        due = services.manager.create(make_api_key_params(settings={"auto_sync_enabled": True}))
        services.manager.create(make_api_key_params(owner_id="carrier-2"))

        first = run_scheduled_syncs(services)
        second = run_scheduled_syncs(services)

        assert (first["started"], first["skipped"], first["failed"]) == (1, 0, 0)
        assert second["started"] == 0
        assert len(services.sync_repository.list_for_connection(due.connection_id)) == 1

    def test_connection_is_due_again_after_interval(self, services, clock):
        services.manager.create(make_api_key_params(
            settings={"auto_sync_enabled": True, "sync_frequency_minutes": 15}
        ))
        run_scheduled_syncs(services)
        clock.advance(minutes=15)

        assert run_scheduled_syncs(services)["started"] == 1

    def test_connection_with_sync_in_progress_is_skipped(self, services, clock):
        connection = services.manager.create(make_api_key_params(settings={"auto_sync_enabled": True}))
        services.sync_repository.put(SyncOperation(
            sync_id="other-worker",
            connection_id=connection.connection_id,
            entity_types=(EntityType.LOADS,),
            status=SyncStatus.IN_PROGRESS,
            started_at=clock(),
        ))

        result = run_scheduled_syncs(services)

        assert (result["started"], result["skipped"]) == (0, 1)
