"""Celery tasks for webhook processing, validation and scheduled sweeps.

Each task is a thin wrapper around a plain function taking the service
container, so the sweeps can be exercised without a broker.
"""

import logging
import time
from typing import Any, Dict

from celery import shared_task

from integrations.container import IntegrationServices, get_integration_services
from integrations.domain import ConnectionStatus, SyncRequest
from integrations.errors import ConflictError, IntegrationError, NotFoundError, ProviderUnavailableError, ValidationError
from observability.correlation import correlation_scope
from webhooks.normalizer import WebhookEvent

logger = logging.getLogger(__name__)


def process_webhook_message(services: IntegrationServices, message: Dict[str, Any]) -> Dict[str, Any]:
    event = WebhookEvent.from_message(message)
    with correlation_scope():
        outcome = services.normalizer.process(event)
    return {
        "status": "completed",
        "outcome": outcome.value,
        "provider_type": event.provider_type.value,
        "connection_id": event.connection_id,
    }


def validate_pending_connection(services: IntegrationServices, connection_id: str) -> Dict[str, Any]:
    """Background validation of a connection created PENDING.

    ProviderUnavailableError propagates so the task can retry; the error
    message has already been recorded on the connection.
    """
    try:
        valid = services.manager.validate(connection_id, raise_transient=True)
    except NotFoundError:
        logger.info(f"Connection {connection_id} deleted before validation", extra={"connection_id": connection_id})
        return {"status": "skipped", "connection_id": connection_id, "valid": False}
    return {"status": "completed", "connection_id": connection_id, "valid": valid}


def validate_pending_connections(services: IntegrationServices) -> Dict[str, Any]:
    """Retry validation of every connection still PENDING.

    Picks up connections whose background validation ran out of retries.
    """
    started = time.monotonic()
    results: Dict[str, int] = {"validated": 0, "invalid": 0, "failed": 0}
    for record in services.manager.list_by_status(ConnectionStatus.PENDING):
        try:
            if services.manager.validate(record.connection_id):
                results["validated"] += 1
            else:
                results["invalid"] += 1
        except NotFoundError:
            continue
        except IntegrationError as e:
            results["failed"] += 1
            logger.warning(f"Pending connection validation failed: {e}", extra={"connection_id": record.connection_id})
    return {"status": "completed", **results, "duration_seconds": round(time.monotonic() - started, 3)}


def refresh_expiring_tokens(services: IntegrationServices) -> Dict[str, Any]:
    """Refresh every ACTIVE OAuth token expiring within the margin.

    Failures are counted per connection; the guard has already moved the
    connection to EXPIRED or REVOKED where the failure warrants it.
    """
    started = time.monotonic()
    refreshed = 0
    failed = 0
    expiring = services.manager.list_expiring_tokens()
    for record in expiring:
        try:
            connection = services.manager.get(record.connection_id)
            services.manager.token_guard.ensure_fresh(connection)
            refreshed += 1
        except IntegrationError as e:
            failed += 1
            logger.warning(
                f"Proactive token refresh failed: {e}",
                extra={"connection_id": record.connection_id, "provider_type": record.provider_type.value},
            )
    return {
        "status": "completed",
        "connections_checked": len(expiring),
        "refreshed": refreshed,
        "failed": failed,
        "duration_seconds": round(time.monotonic() - started, 3),
    }


def run_scheduled_syncs(services: IntegrationServices) -> Dict[str, Any]:
    """Start a sync for every connection whose auto-sync interval elapsed.

    A connection that already has a sync in progress is skipped.
    """
    started = time.monotonic()
    results: Dict[str, int] = {"started": 0, "skipped": 0, "failed": 0}
    for connection in services.manager.list_due_for_sync():
        try:
            operation = services.orchestrator.request_sync(SyncRequest(connection_id=connection.connection_id))
            results["started"] += 1
            logger.info(
                f"Scheduled sync finished with {operation.status.value}",
                extra={"connection_id": connection.connection_id, "sync_id": operation.sync_id},
            )
        except (ConflictError, NotFoundError, ValidationError) as e:
            results["skipped"] += 1
            logger.info(f"Scheduled sync skipped: {e}", extra={"connection_id": connection.connection_id})
        except IntegrationError as e:
            results["failed"] += 1
            logger.error(f"Scheduled sync failed: {e}", extra={"connection_id": connection.connection_id})
    return {"status": "completed", **results, "duration_seconds": round(time.monotonic() - started, 3)}


@shared_task(name="integrations.process_webhook", bind=True, max_retries=3)
def process_webhook_task(self, message: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize one queued webhook delivery.

    Transient failures release the dedup claim inside the normalizer and are
    retried with exponential backoff.
    """
    try:
        return process_webhook_message(get_integration_services(), message)
    except (ProviderUnavailableError, ConflictError) as e:
        logger.warning(
            f"Webhook processing failed transiently, retrying: {e}",
            extra={"provider_type": message.get("provider_type"), "retry_count": self.request.retries},
        )
        raise self.retry(exc=e, countdown=2 ** self.request.retries * 10)


@shared_task(name="integrations.validate_connection", bind=True, max_retries=3)
def validate_connection_task(self, connection_id: str) -> Dict[str, Any]:
    try:
        return validate_pending_connection(get_integration_services(), connection_id)
    except ProviderUnavailableError as e:
        raise self.retry(exc=e, countdown=2 ** self.request.retries * 60)


@shared_task(name="integrations.refresh_expiring_tokens", bind=True)
def refresh_expiring_tokens_task(self) -> Dict[str, Any]:
    logger.info("Token refresh sweep started")
    result = refresh_expiring_tokens(get_integration_services())
    logger.info(
        f"Token refresh sweep completed: {result['refreshed']} refreshed, {result['failed']} failed",
        extra={"duration_ms": int(result["duration_seconds"] * 1000)},
    )
    return result


@shared_task(name="integrations.run_scheduled_syncs", bind=True)
def run_scheduled_syncs_task(self) -> Dict[str, Any]:
    logger.info("Scheduled sync sweep started")
    result = run_scheduled_syncs(get_integration_services())
    logger.info(
        f"Scheduled sync sweep completed: {result['started']} started, {result['skipped']} skipped",
        extra={"duration_ms": int(result["duration_seconds"] * 1000)},
    )
    return result


@shared_task(name="integrations.validate_pending_connections", bind=True)
def validate_pending_connections_task(self) -> Dict[str, Any]:
    result = validate_pending_connections(get_integration_services())
    logger.info(
        f"Pending validation sweep completed: {result['validated']} validated, {result['failed']} failed",
        extra={"duration_ms": int(result["duration_seconds"] * 1000)},
    )
    return result
