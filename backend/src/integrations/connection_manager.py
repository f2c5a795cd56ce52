"""Connection Manager - owns the Connection lifecycle and state machine.

All writes to a connection (status, credentials, sync bookkeeping) go through
_mutate(), which is a compare-and-set on updated_at. Credential writes happen
inside the same per-connection critical section, so a token refresh racing a
webhook-triggered revocation cannot resurrect wiped secrets.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from observability.metrics import connection_transitions_total
from .coordination import SyncCoordinator
from .credentials import Credential, IntegrationType, OAuthCredential, ensure_matches
from .domain import (
    Connection,
    ConnectionStatus,
    Owner,
    ProviderType,
    SyncStatus,
    utcnow,
)
from .errors import (
    AuthenticationError,
    ConflictError,
    IntegrationError,
    NotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from .events import CanonicalEvent, CanonicalEventType, EventPublisher, LoggingEventPublisher, safe_publish
from .ports import ProviderAdapter
from .registry import AdapterRegistry
from .retry import RetryPolicy, call_with_retry
from .state_machine import require_transition, resolve_transition
from .storage import ConnectionRepository, CredentialVault, SyncOperationRepository
from .token_guard import TokenRefreshGuard

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class CreateConnectionParams:
    owner: Owner
    provider_type: ProviderType
    integration_type: IntegrationType
    credentials: Credential
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateConnectionParams:
    """Partial update. None leaves a field unchanged; settings are merged."""
    credentials: Optional[Credential] = None
    settings: Optional[dict[str, Any]] = None


class ConnectionManager:
    """Service for connection lifecycle operations.

    Constructed once at startup (see integrations.container) and shared by
    the sync orchestrator, the gateway and the webhook normalizer.
    """

    MAX_CAS_ATTEMPTS = 5

    def __init__(
        self,
        repository: ConnectionRepository,
        vault: CredentialVault,
        registry: AdapterRegistry,
        coordinator: SyncCoordinator,
        sync_repository: SyncOperationRepository,
        publisher: Optional[EventPublisher] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        margin_seconds: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
        validation_scheduler: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.vault = vault
        self.registry = registry
        self.coordinator = coordinator
        self.sync_repository = sync_repository
        self.publisher = publisher or LoggingEventPublisher()
        self._clock = clock
        self._retry_policy = retry_policy or RetryPolicy()
        self._validation_scheduler = validation_scheduler
        self._sleep = sleep
        self._create_lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self.token_guard = TokenRefreshGuard(
            self,
            registry,
            margin_seconds=margin_seconds,
            retry_policy=self._retry_policy,
            clock=clock,
            sleep=sleep,
        )

    # Queries

    def get(self, connection_id: str) -> Connection:
        """Load a connection together with its credentials.

        Raises:
            NotFoundError: Unknown connection_id
        """
        record = self.repository.get(connection_id)
        if record is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return replace(record, credentials=self.vault.read(connection_id))

    def get_by_owner(self, owner: Owner, provider_type: Optional[ProviderType] = None) -> list[Connection]:
        return [
            replace(record, credentials=self.vault.read(record.connection_id))
            for record in self.repository.find_by_owner(owner, provider_type)
        ]

    def list_by_status(self, status: ConnectionStatus) -> list[Connection]:
        """Connection records in a status, without credentials."""
        return self.repository.list_by_status(status)

    def find_by_provider_account(self, provider_type: ProviderType, provider_account_id: str) -> list[Connection]:
        return self.repository.find_by_provider_account(provider_type, provider_account_id)

    def list_expiring_tokens(self) -> list[Connection]:
        """ACTIVE OAuth connections whose token expires within the refresh margin."""
        return self.repository.list_expiring(self._clock() + self.token_guard.margin)

    def list_due_for_sync(self, now: Optional[datetime] = None) -> list[Connection]:
        """ACTIVE connections with auto sync enabled whose sync interval has elapsed."""
        now = now or self._clock()
        due = []
        for connection in self.repository.list_by_status(ConnectionStatus.ACTIVE):
            if not connection.settings.get("auto_sync_enabled"):
                continue
            frequency = int(connection.settings.get("sync_frequency_minutes") or 60)
            if connection.last_sync_at is None or connection.last_sync_at + timedelta(minutes=frequency) <= now:
                due.append(connection)
        return due

    # Commands

    def create(self, params: CreateConnectionParams) -> Connection:
        """Create a connection and test it synchronously.

        Args:
            params: Owner, provider, integration type and matching credential

        Returns:
            The new connection, ACTIVE if the test succeeded, else PENDING
            with error_message set and a background validation scheduled

        Raises:
            ValidationError: Credential variant does not match integration_type,
                or the provider does not support it
            ConflictError: An ACTIVE connection already exists for (owner, provider_type)
        """
        ensure_matches(params.integration_type, params.credentials)
        adapter = self.registry.get(params.provider_type)
        if not adapter.supports(params.integration_type):
            raise ValidationError(
                f"{params.provider_type.value} does not support {params.integration_type.value} connections"
            )
        self._ensure_no_active(params.owner, params.provider_type)

        now = self._clock()
        settings = dict(params.settings)
        credential = params.credentials
        candidate = Connection(
            connection_id=str(uuid.uuid4()),
            owner=params.owner,
            provider_type=params.provider_type,
            integration_type=params.integration_type,
            status=ConnectionStatus.PENDING,
            created_at=now,
            updated_at=now,
            credentials=credential,
            settings=settings,
            provider_account_id=settings.get("provider_account_id"),
            token_expires_at=credential.expires_at if isinstance(credential, OAuthCredential) else None,
        )

        candidate, ok, error = self._probe(adapter, candidate)
        credential = candidate.credentials
        if ok:
            candidate = replace(
                candidate,
                status=ConnectionStatus.ACTIVE,
                provider_account_id=candidate.provider_account_id or self._account_id(adapter, credential),
            )
        else:
            candidate = replace(candidate, error_message=error)

        with self._create_lock:
            self._ensure_no_active(params.owner, params.provider_type)
            self.repository.put(candidate)
            try:
                self.vault.write(candidate.connection_id, credential)
            except Exception:
                self.repository.delete(candidate.connection_id)
                raise

        logger.info(
            f"Created {params.provider_type.value} connection ({candidate.status.value})",
            extra={
                "connection_id": candidate.connection_id,
                "provider_type": params.provider_type.value,
                "status": candidate.status.value,
            },
        )
        if candidate.status == ConnectionStatus.PENDING and self._validation_scheduler is not None:
            self._validation_scheduler(candidate.connection_id)
        return candidate

    def update(self, connection_id: str, params: UpdateConnectionParams) -> Connection:
        """Partially update settings and/or credentials.

        New credentials are tested before they are stored; the result moves
        the connection to ACTIVE or ERROR.

        Raises:
            NotFoundError: Unknown connection_id
            ValidationError: Connection is REVOKED or the credential variant
                does not match
        """
        current = self.get(connection_id)
        if current.status == ConnectionStatus.REVOKED:
            raise ValidationError(f"Connection {connection_id} is revoked and cannot be updated")

        settings = dict(current.settings)
        if params.settings:
            settings.update(params.settings)

        target_status = None
        error_message: Any = _UNSET
        new_credentials = params.credentials
        if new_credentials is not None:
            ensure_matches(current.integration_type, new_credentials)
            candidate = replace(current, credentials=new_credentials, settings=settings)
            candidate, ok, error = self._probe(self.registry.get(current.provider_type), candidate)
            new_credentials = candidate.credentials
            target_status = ConnectionStatus.ACTIVE if ok else ConnectionStatus.ERROR
            error_message = None if ok else error

        def change(connection: Connection) -> Optional[Connection]:
            if connection.status == ConnectionStatus.REVOKED:
                raise ValidationError(f"Connection {connection_id} is revoked and cannot be updated")
            updated = replace(
                connection,
                settings=settings,
                provider_account_id=settings.get("provider_account_id") or connection.provider_account_id,
            )
            if new_credentials is not None:
                updated = replace(
                    updated,
                    status=resolve_transition(connection.status, target_status),
                    error_message=error_message,
                    token_expires_at=(
                        new_credentials.expires_at
                        if isinstance(new_credentials, OAuthCredential)
                        else None
                    ),
                )
            return updated

        self._mutate(connection_id, change, credentials=new_credentials)
        return self.get(connection_id)

    def delete(self, connection_id: str) -> None:
        """Hard-delete a connection after cancelling its in-flight sync.

        Raises:
            NotFoundError: Unknown connection_id
        """
        if self.repository.get(connection_id) is None:
            raise NotFoundError(f"Connection {connection_id} not found")

        self.coordinator.cancel(connection_id)
        active = self.sync_repository.find_active(connection_id)
        if active is not None and not self.coordinator.is_in_flight(connection_id):
            # Owned by another process or left behind by a crash.
            try:
                self.sync_repository.put(replace(
                    active,
                    status=SyncStatus.FAILED,
                    error_message="cancelled",
                    completed_at=self._clock(),
                ))
            except ConflictError:
                logger.info("Sync finished before it could be cancelled", extra={"sync_id": active.sync_id})

        with self._lock_for(connection_id):
            self.vault.delete(connection_id)
            self.repository.delete(connection_id)
        self.coordinator.forget(connection_id)
        logger.info("Deleted connection", extra={"connection_id": connection_id})

    def validate(self, connection_id: str, *, raise_transient: bool = False) -> bool:
        """Test the connection and move it along the state machine.

        Success moves PENDING, ERROR or EXPIRED to ACTIVE and clears
        error_message. A REVOKED connection is never tested and stays REVOKED.

        Args:
            connection_id: Connection to test
            raise_transient: Re-raise ProviderUnavailableError after recording
                it, so a background caller can schedule another attempt

        Returns:
            True if the provider accepted the connection
        """
        connection = self.get(connection_id)
        if connection.status == ConnectionStatus.REVOKED:
            logger.info("Skipping validation of revoked connection", extra={"connection_id": connection_id})
            return False

        adapter = self.registry.get(connection.provider_type)
        try:
            fresh, ok = self._with_retry(
                adapter,
                lambda: self.token_guard.call(connection, lambda c: (c, adapter.test_connection(c))),
                connection_id,
            )
        except AuthenticationError as exc:
            # Connection-level failures were recorded by the token guard.
            if not exc.connection_level:
                self._transition(connection_id, ConnectionStatus.ERROR, error_message=exc.message)
            return False
        except ProviderUnavailableError as exc:
            self._transition(connection_id, connection.status, error_message=exc.message)
            if raise_transient:
                raise
            return False
        except IntegrationError as exc:
            self._transition(connection_id, connection.status, error_message=exc.message)
            return False

        if not ok:
            self._transition(connection_id, ConnectionStatus.ERROR, error_message="Connection test failed")
            return False

        account_id = connection.provider_account_id
        if account_id is None and fresh.credentials is not None:
            account_id = self._account_id(adapter, fresh.credentials)

        def activate(current: Connection) -> Optional[Connection]:
            if current.status == ConnectionStatus.REVOKED:
                return None
            return replace(
                current,
                status=resolve_transition(current.status, ConnectionStatus.ACTIVE),
                error_message=None,
                provider_account_id=current.provider_account_id or account_id,
            )

        self._mutate(connection_id, activate)
        return True

    def revoke(self, connection_id: str, reason: str = "Access revoked") -> Connection:
        """Move a connection to REVOKED and wipe its secrets.

        Idempotent: revoking a REVOKED connection changes nothing.
        """
        self.coordinator.cancel(connection_id)

        def change(current: Connection) -> Optional[Connection]:
            if current.status == ConnectionStatus.REVOKED:
                return None
            return replace(current, status=ConnectionStatus.REVOKED, error_message=reason, token_expires_at=None)

        _, after = self._mutate(connection_id, change, wipe_credentials=True, reason=reason)
        return after

    def mark_expired(self, connection_id: str, message: str) -> Connection:
        return self._transition(connection_id, ConnectionStatus.EXPIRED, error_message=message)

    def record_auth_failure(self, connection_id: str, exc: AuthenticationError) -> Connection:
        """Apply a connection-level authentication failure to the status.

        Revocation moves to REVOKED. An expired token with no refresh token
        moves to EXPIRED; anything else to ERROR.
        """
        if exc.revoked:
            return self.revoke(connection_id, reason=exc.message)
        if not exc.connection_level:
            return self.get(connection_id)

        connection = self.get(connection_id)
        credential = connection.oauth_credential
        if exc.token_expired and (credential is None or not credential.refresh_token):
            target = ConnectionStatus.EXPIRED
        else:
            target = ConnectionStatus.ERROR
        logger.warning(
            f"Authentication failure on connection: {exc.message}",
            extra={"connection_id": connection_id, "provider_type": connection.provider_type.value},
        )
        return self._transition(connection_id, target, error_message=exc.message)

    def store_refreshed_credentials(self, connection_id: str, credential: OAuthCredential) -> Connection:
        """Persist a refreshed OAuth credential.

        Raises:
            AuthenticationError: The connection was revoked while refreshing
        """
        def change(current: Connection) -> Connection:
            if current.status == ConnectionStatus.REVOKED:
                raise AuthenticationError(
                    f"Connection {connection_id} was revoked during token refresh",
                    revoked=True,
                    provider_type=current.provider_type.value,
                )
            updated = replace(current, token_expires_at=credential.expires_at)
            if current.status == ConnectionStatus.EXPIRED:
                updated = replace(updated, status=ConnectionStatus.ACTIVE, error_message=None)
            return updated

        _, after = self._mutate(connection_id, change, credentials=credential)
        return replace(after, credentials=credential)

    def record_sync_result(
        self,
        connection_id: str,
        *,
        any_succeeded: bool,
        error_message: Optional[str],
        completed_at: datetime,
    ) -> Optional[Connection]:
        """Update last_sync_at and error_message after a sync finishes.

        Returns None if the connection was deleted while the sync ran.
        """
        def change(current: Connection) -> Optional[Connection]:
            if current.status == ConnectionStatus.REVOKED:
                return None
            return replace(
                current,
                last_sync_at=completed_at if any_succeeded else current.last_sync_at,
                error_message=error_message,
            )

        try:
            _, after = self._mutate(connection_id, change)
        except NotFoundError:
            logger.info("Connection deleted during sync", extra={"connection_id": connection_id})
            return None
        return after

    def transition(self, connection_id: str, target: ConnectionStatus, error_message: Optional[str] = None) -> Connection:
        """Explicit status change requested by a collaborator.

        Raises:
            ValidationError: The edge is not part of the state machine
        """
        def change(current: Connection) -> Optional[Connection]:
            require_transition(current.status, target)
            if current.status == target:
                return None
            return replace(current, status=target, error_message=error_message)

        wipe = target == ConnectionStatus.REVOKED
        if wipe:
            self.coordinator.cancel(connection_id)
        _, after = self._mutate(connection_id, change, wipe_credentials=wipe, reason=error_message)
        return after

    # Internals

    def _transition(self, connection_id: str, target: ConnectionStatus, *, error_message: Optional[str]) -> Connection:
        """Internally driven status change.

        Edges outside the graph keep the current status but still record the
        message. REVOKED connections are left untouched.
        """
        def change(current: Connection) -> Optional[Connection]:
            if current.status == ConnectionStatus.REVOKED:
                return None
            return replace(
                current,
                status=resolve_transition(current.status, target),
                error_message=error_message,
            )

        _, after = self._mutate(connection_id, change)
        return after

    def _lock_for(self, connection_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[connection_id] = lock
            return lock

    def _next_timestamp(self, previous: datetime) -> datetime:
        # updated_at must move even when the clock has not.
        return max(self._clock(), previous + timedelta(microseconds=1))

    def _mutate(
        self,
        connection_id: str,
        change: Callable[[Connection], Optional[Connection]],
        *,
        credentials: Optional[Credential] = None,
        wipe_credentials: bool = False,
        reason: Optional[str] = None,
    ) -> tuple[Connection, Connection]:
        """Apply `change` with compare-and-set on updated_at.

        `change` receives the stored record and returns the new record, or
        None for no change. It may raise to abort.

        Returns:
            (before, after) records

        Raises:
            NotFoundError: Unknown connection_id
            ConflictError: Lost the compare-and-set MAX_CAS_ATTEMPTS times
        """
        with self._lock_for(connection_id):
            for attempt in range(1, self.MAX_CAS_ATTEMPTS + 1):
                current = self.repository.get(connection_id)
                if current is None:
                    raise NotFoundError(f"Connection {connection_id} not found")

                updated = change(current)
                if updated is None:
                    if wipe_credentials:
                        self.vault.delete(connection_id)
                    return current, current

                updated = replace(updated, credentials=None, updated_at=self._next_timestamp(current.updated_at))
                try:
                    self.repository.put(updated, expected_updated_at=current.updated_at)
                except ConflictError:
                    logger.debug(
                        "Concurrent connection update, retrying",
                        extra={"connection_id": connection_id, "attempt": attempt},
                    )
                    continue

                if wipe_credentials:
                    self.vault.delete(connection_id)
                elif credentials is not None:
                    self.vault.write(connection_id, credentials)
                    latest = self.repository.get(connection_id)
                    if latest is not None and latest.status == ConnectionStatus.REVOKED:
                        # Revoked by another process between our write and now.
                        self.vault.delete(connection_id)

                if current.status != updated.status:
                    self._on_transition(current, updated, reason)
                return current, updated

        raise ConflictError(f"Connection {connection_id} is being modified concurrently")

    def _on_transition(self, before: Connection, after: Connection, reason: Optional[str]) -> None:
        connection_transitions_total.labels(
            from_status=before.status.value,
            to_status=after.status.value,
        ).inc()
        logger.info(
            f"Connection status {before.status.value} -> {after.status.value}",
            extra={
                "connection_id": after.connection_id,
                "provider_type": after.provider_type.value,
                "status": after.status.value,
            },
        )
        safe_publish(self.publisher, CanonicalEvent(
            event_type=CanonicalEventType.CONNECTION_STATUS_CHANGED,
            connection_id=after.connection_id,
            provider_type=after.provider_type.value,
            occurred_at=after.updated_at,
            payload={
                "from_status": before.status.value,
                "to_status": after.status.value,
                "error_message": after.error_message,
            },
        ))
        if after.status == ConnectionStatus.REVOKED:
            safe_publish(self.publisher, CanonicalEvent(
                event_type=CanonicalEventType.CONNECTION_REVOKED,
                connection_id=after.connection_id,
                provider_type=after.provider_type.value,
                occurred_at=after.updated_at,
                payload={"reason": reason or after.error_message},
            ))

    def _ensure_no_active(self, owner: Owner, provider_type: ProviderType) -> None:
        for existing in self.repository.find_by_owner(owner, provider_type):
            if existing.status == ConnectionStatus.ACTIVE:
                raise ConflictError(
                    f"{owner} already has an active {provider_type.value} connection "
                    f"({existing.connection_id})"
                )

    def _with_retry(self, adapter: ProviderAdapter, fn: Callable, connection_id: str):
        return call_with_retry(
            fn,
            policy=self._retry_policy.with_max_attempts(adapter.retry_attempts),
            sleep=self._sleep,
            log_context={"connection_id": connection_id, "provider_type": adapter.provider_type.value},
        )

    def _probe(self, adapter: ProviderAdapter, connection: Connection) -> tuple[Connection, bool, Optional[str]]:
        """Run test_connection on a candidate without touching stored state.

        An OAuth token inside the refresh margin is refreshed first; the
        returned connection carries the credential that should be stored.
        """
        log_extra = {"connection_id": connection.connection_id, "provider_type": adapter.provider_type.value}
        try:
            connection = self.token_guard.refresh_candidate(connection)
        except IntegrationError as exc:
            logger.info(f"Token refresh before connection test failed: {exc}", extra=log_extra)
            return connection, False, exc.message

        try:
            ok = self._with_retry(adapter, lambda: adapter.test_connection(connection), connection.connection_id)
        except IntegrationError as exc:
            logger.info(f"Connection test failed: {exc}", extra=log_extra)
            return connection, False, exc.message
        return (connection, True, None) if ok else (connection, False, "Connection test failed")

    def _account_id(self, adapter: ProviderAdapter, credential: Credential) -> Optional[str]:
        try:
            return adapter.fetch_account_id(credential)
        except IntegrationError as exc:
            logger.info(f"Could not resolve provider account id: {exc}")
            return None
