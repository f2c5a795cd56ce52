"""Token Refresh Guard - just-in-time OAuth refresh around provider calls.

Every adapter call that needs authentication goes through
TokenRefreshGuard.call(). For OAuth connections whose access token expires
within the safety margin, the refresh happens first and the new credential is
persisted through the Connection Manager before the call is dispatched. A
failed refresh aborts the call; the provider never sees a stale token.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING, Callable, Optional, TypeVar

from observability.metrics import token_refresh_total
from .credentials import IntegrationType, OAuthCredential
from .domain import Connection, ConnectionStatus, utcnow
from .errors import AuthenticationError, ProviderUnavailableError
from .registry import AdapterRegistry
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenRefreshGuard:
    """Wraps adapter calls with an expiry check and refresh.

    One refresh per connection runs at a time; concurrent callers wait for it
    and then reuse the stored credential.
    """

    def __init__(
        self,
        manager: "ConnectionManager",
        registry: AdapterRegistry,
        *,
        margin_seconds: int = 300,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._manager = manager
        self._registry = registry
        self.margin = timedelta(seconds=margin_seconds)
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[connection_id] = lock
            return lock

    def needs_refresh(self, connection: Connection) -> bool:
        credential = connection.oauth_credential
        return credential is not None and credential.expires_within(self._clock(), self.margin)

    def call(self, connection: Connection, fn: Callable[[Connection], T]) -> T:
        """Run fn against a connection whose credential is known to be fresh.

        Connection-level authentication failures raised by fn are recorded on
        the connection before they propagate.
        """
        fresh = self.ensure_fresh(connection)
        try:
            return fn(fresh)
        except AuthenticationError as exc:
            if exc.connection_level:
                self._manager.record_auth_failure(fresh.connection_id, exc)
            raise

    def ensure_fresh(self, connection: Connection) -> Connection:
        """Return the connection with a credential valid beyond the margin.

        Non-OAuth connections are returned unchanged.

        Raises:
            AuthenticationError: Refresh rejected, connection revoked, or no
                usable credential
            ProviderUnavailableError: Refresh failed transiently while the
                current token has not yet expired
        """
        if connection.integration_type != IntegrationType.OAUTH:
            return connection
        if connection.oauth_credential is None:
            raise AuthenticationError(
                f"Connection {connection.connection_id} has no OAuth credential",
                provider_type=connection.provider_type.value,
            )
        if not self.needs_refresh(connection):
            return connection

        with self._lock_for(connection.connection_id):
            # Another caller may have refreshed while we waited.
            current = self._manager.get(connection.connection_id)
            if current.status == ConnectionStatus.REVOKED or current.oauth_credential is None:
                raise AuthenticationError(
                    f"Connection {connection.connection_id} has been revoked",
                    revoked=True,
                    provider_type=connection.provider_type.value,
                )
            if not self.needs_refresh(current):
                return current
            return self._refresh(current, current.oauth_credential)

    def refresh_candidate(self, connection: Connection) -> Connection:
        """Freshen the credential of a connection that is not stored yet.

        Used while creating or updating a connection, before the probe call.
        Nothing is persisted and no status is recorded; the caller stores the
        returned credential together with the probe outcome.

        Raises:
            AuthenticationError: Refresh rejected, or the new token also
                expires within the margin
            ProviderUnavailableError: Refresh failed transiently
        """
        if connection.integration_type != IntegrationType.OAUTH or not self.needs_refresh(connection):
            return connection

        adapter = self._registry.get(connection.provider_type)
        provider = connection.provider_type.value
        try:
            refreshed = call_with_retry(
                lambda: adapter.refresh_token(connection.oauth_credential),
                policy=self._retry_policy.with_max_attempts(adapter.retry_attempts),
                sleep=self._sleep,
                log_context={
                    "connection_id": connection.connection_id,
                    "provider_type": provider,
                    "operation": "token_refresh",
                },
            )
        except AuthenticationError as exc:
            token_refresh_total.labels(provider=provider, outcome="revoked" if exc.revoked else "expired").inc()
            raise
        except ProviderUnavailableError:
            token_refresh_total.labels(provider=provider, outcome="unavailable").inc()
            raise

        token_refresh_total.labels(provider=provider, outcome="success").inc()
        if refreshed.expires_within(self._clock(), self.margin):
            raise AuthenticationError(
                f"{provider} issued a token that expires within the refresh margin",
                token_expired=True,
                provider_type=provider,
            )
        return replace(connection, credentials=refreshed, token_expires_at=refreshed.expires_at)

    def _refresh(self, connection: Connection, credential: OAuthCredential) -> Connection:
        adapter = self._registry.get(connection.provider_type)
        provider = connection.provider_type.value
        log_extra = {"connection_id": connection.connection_id, "provider_type": provider}

        try:
            refreshed = call_with_retry(
                lambda: adapter.refresh_token(credential),
                policy=self._retry_policy.with_max_attempts(adapter.retry_attempts),
                sleep=self._sleep,
                log_context={**log_extra, "operation": "token_refresh"},
            )
        except AuthenticationError as exc:
            outcome = "revoked" if exc.revoked else "expired"
            token_refresh_total.labels(provider=provider, outcome=outcome).inc()
            logger.warning(f"Token refresh rejected ({outcome}): {exc}", extra=log_extra)
            if exc.revoked:
                self._manager.revoke(connection.connection_id, reason=f"Refresh token rejected: {exc.message}")
            else:
                self._manager.mark_expired(connection.connection_id, f"Token refresh failed: {exc.message}")
            raise AuthenticationError(
                f"Token refresh failed for connection {connection.connection_id}: {exc.message}",
                token_expired=not exc.revoked,
                revoked=exc.revoked,
                provider_type=provider,
            ) from exc
        except ProviderUnavailableError as exc:
            token_refresh_total.labels(provider=provider, outcome="unavailable").inc()
            if credential.is_expired(self._clock()):
                self._manager.mark_expired(connection.connection_id, f"Token expired and refresh failed: {exc.message}")
                raise AuthenticationError(
                    f"Access token for connection {connection.connection_id} expired and could not be refreshed",
                    token_expired=True,
                    provider_type=provider,
                ) from exc
            logger.warning(f"Token refresh unavailable, call aborted: {exc}", extra=log_extra)
            raise

        stored = self._manager.store_refreshed_credentials(connection.connection_id, refreshed)
        token_refresh_total.labels(provider=provider, outcome="success").inc()
        logger.info(
            "Refreshed OAuth token",
            extra={**log_extra, "expires_at": refreshed.expires_at.isoformat() if refreshed.expires_at else None},
        )

        if refreshed.expires_within(self._clock(), self.margin):
            raise AuthenticationError(
                f"{provider} issued a token that expires within the refresh margin",
                connection_level=False,
                provider_type=provider,
            )
        return replace(stored, credentials=refreshed)
