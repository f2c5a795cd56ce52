"""
Webhook Normalizer - provider webhooks to canonical events

Processing order for one delivery:
1. Decode the body and let the provider adapter extract its fields
2. Resolve the owning connection (account id, or an echoed connection id)
3. Verify the HMAC signature with the connection's webhook_secret or the
   provider-global secret
4. Under the connection's FIFO lock: claim the dedup key, map the event,
   revoke or apply the monotonic-timestamp guard, publish

Verification failures are logged and dropped, never surfaced to the
provider. Transient failures release the dedup claim and propagate so the
queue can redeliver.
"""

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from integrations.connection_manager import ConnectionManager
from integrations.coordination import SyncCoordinator
from integrations.domain import Connection, ConnectionStatus, ProviderType
from integrations.errors import NotFoundError, ValidationError, WebhookVerificationError
from integrations.events import CanonicalEvent, CanonicalEventType, EventPublisher, safe_publish
from integrations.freshness import FreshnessGuard, freshness_key
from integrations.ports import ProviderAdapter, ProviderWebhook
from integrations.registry import AdapterRegistry
from observability.logging_config import redact
from observability.metrics import webhooks_total
from .dedup import DedupStore, compute_dedup_key
from .signatures import verify_signature

logger = logging.getLogger(__name__)

# Personal fields dropped from logged payloads
LOG_STRIP_FIELDS = frozenset({"driver_name", "driver_phone"})


class WebhookOutcome(str, Enum):
    PUBLISHED = "published"
    REVOKED = "revoked"
    DUPLICATE = "duplicate"
    BAD_SIGNATURE = "bad_signature"
    UNRESOLVED = "unresolved"
    STALE = "stale"
    IGNORED = "ignored"
    MALFORMED = "malformed"


@dataclass
class WebhookEvent:
    """One inbound delivery. Lives only for the duration of processing."""
    provider_type: ProviderType
    raw_payload: bytes
    signature: Optional[str]
    received_at: datetime
    connection_id: Optional[str] = None
    canonical_type: Optional[CanonicalEventType] = None
    dedup_key: Optional[str] = None

    def to_message(self) -> dict[str, Any]:
        """Serialize for a task queue."""
        return {
            "provider_type": self.provider_type.value,
            "raw_payload": base64.b64encode(self.raw_payload).decode("ascii"),
            "signature": self.signature,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "WebhookEvent":
        return cls(
            provider_type=ProviderType(message["provider_type"]),
            raw_payload=base64.b64decode(message["raw_payload"]),
            signature=message.get("signature"),
            received_at=datetime.fromisoformat(message["received_at"]),
        )


def _loggable(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {k: _loggable(v) for k, v in redact(payload).items() if k not in LOG_STRIP_FIELDS}
    return payload


class WebhookNormalizer:
    def __init__(
        self,
        manager: ConnectionManager,
        registry: AdapterRegistry,
        publisher: EventPublisher,
        dedup_store: DedupStore,
        coordinator: SyncCoordinator,
        *,
        freshness_guard: Optional[FreshnessGuard] = None,
        global_secret: Optional[str] = None,
        bucket_seconds: int = 60,
    ):
        self._manager = manager
        self._registry = registry
        self._publisher = publisher
        self._dedup = dedup_store
        self._coordinator = coordinator
        self._freshness = freshness_guard
        self._global_secret = global_secret
        self._bucket_seconds = bucket_seconds

    def process(self, event: WebhookEvent) -> WebhookOutcome:
        """Normalize one delivery.

        Returns:
            What happened to the delivery

        Raises:
            IntegrationError: Transient failure (repository, vault); the
                dedup claim is released so a redelivery is processed
        """
        outcome = self._process(event)
        webhooks_total.labels(provider=event.provider_type.value, outcome=outcome.value).inc()
        return outcome

    def _process(self, event: WebhookEvent) -> WebhookOutcome:
        provider = event.provider_type.value
        adapter = self._registry.get(event.provider_type)

        try:
            body = json.loads(event.raw_payload)
            if not isinstance(body, dict):
                raise ValidationError("Webhook body is not a JSON object")
            webhook = adapter.parse_webhook(body)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Malformed {provider} webhook dropped: {e}", extra={"provider_type": provider})
            return WebhookOutcome.MALFORMED

        connection = self._resolve(event.provider_type, webhook)
        if connection is None:
            logger.info(
                f"No connection for {provider} webhook {webhook.event_type}",
                extra={"provider_type": provider, "event_type": webhook.event_type},
            )
            return WebhookOutcome.UNRESOLVED
        event.connection_id = connection.connection_id

        try:
            self._verify(event, connection)
        except WebhookVerificationError as e:
            logger.warning(
                f"Webhook dropped: {e}",
                extra={"provider_type": provider, "connection_id": connection.connection_id},
            )
            return WebhookOutcome.BAD_SIGNATURE

        with self._coordinator.connection_lock(connection.connection_id):
            event.dedup_key = compute_dedup_key(
                provider, webhook.event_id, event.raw_payload, event.received_at, self._bucket_seconds
            )
            if not self._dedup.claim(event.dedup_key):
                logger.info(
                    "Duplicate webhook dropped",
                    extra={"provider_type": provider, "connection_id": connection.connection_id, "dedup_key": event.dedup_key},
                )
                return WebhookOutcome.DUPLICATE
            try:
                return self._apply(adapter, event, webhook)
            except Exception:
                self._dedup.release(event.dedup_key)
                raise

    def _resolve(self, provider_type: ProviderType, webhook: ProviderWebhook) -> Optional[Connection]:
        """Pick the owning connection.

        An echoed connection id wins. Otherwise among connections for the
        account id prefer ACTIVE, then the most recently updated.
        """
        if webhook.connection_hint:
            record = self._manager.repository.get(str(webhook.connection_hint))
            if record is not None and record.provider_type == provider_type:
                return record
        if not webhook.account_id:
            return None
        candidates = self._manager.find_by_provider_account(provider_type, str(webhook.account_id))
        if not candidates:
            return None
        return sorted(
            candidates,
            key=lambda c: (c.status == ConnectionStatus.ACTIVE, c.status != ConnectionStatus.REVOKED, c.updated_at),
            reverse=True,
        )[0]

    def _verify(self, event: WebhookEvent, connection: Connection) -> None:
        secret = connection.settings.get("webhook_secret") or self._global_secret
        if not secret:
            raise WebhookVerificationError(
                "no webhook secret configured", provider_type=event.provider_type.value
            )
        if not verify_signature(event.raw_payload, event.signature, secret):
            raise WebhookVerificationError(
                "signature missing or invalid", provider_type=event.provider_type.value
            )

    def _apply(self, adapter: ProviderAdapter, event: WebhookEvent, webhook: ProviderWebhook) -> WebhookOutcome:
        provider = event.provider_type.value
        connection_id = event.connection_id
        log_extra = {"provider_type": provider, "connection_id": connection_id, "event_type": webhook.event_type}

        canonical = adapter.canonical_event_type(webhook.event_type)
        if canonical is None:
            logger.info(f"Ignoring unmapped {provider} event {webhook.event_type}", extra=log_extra)
            logger.debug("Ignored payload", extra={**log_extra, "payload": _loggable(webhook.data)})
            return WebhookOutcome.IGNORED
        event.canonical_type = canonical

        if canonical.is_revocation:
            try:
                self._manager.revoke(connection_id, reason=f"Provider sent {webhook.event_type}")
            except NotFoundError:
                return WebhookOutcome.UNRESOLVED
            return WebhookOutcome.REVOKED

        # Re-read under the FIFO lock: an earlier delivery may have revoked it.
        current = self._manager.repository.get(connection_id)
        if current is None or current.status == ConnectionStatus.REVOKED:
            logger.info("Data webhook for revoked or deleted connection ignored", extra=log_extra)
            return WebhookOutcome.IGNORED

        occurred_at = webhook.occurred_at or event.received_at
        scope = canonical.state_scope
        if scope and webhook.entity_id and self._freshness is not None:
            key = freshness_key(connection_id, scope, str(webhook.entity_id))
            if not self._freshness.check_and_set(key, occurred_at):
                logger.info("Stale webhook update dropped", extra=log_extra)
                return WebhookOutcome.STALE

        safe_publish(self._publisher, CanonicalEvent(
            event_type=canonical,
            connection_id=connection_id,
            provider_type=provider,
            occurred_at=occurred_at,
            payload={
                **webhook.data,
                "entity_id": webhook.entity_id,
                "provider_event_type": webhook.event_type,
                "provider_event_id": webhook.event_id,
            },
        ))
        return WebhookOutcome.PUBLISHED
