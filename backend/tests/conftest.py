"""Pytest fixtures for the integration framework.

Provides:
- Deterministic wall clock and monotonic clock (sleep advances time)
- A scriptable fake provider adapter registered for an ELD and a TMS provider
- A fully wired in-memory service container
- Helpers to create OAuth and API-key connections

Usage:
    def test_sync(services, oauth_connection, eld_adapter):
        eld_adapter.pages[EntityType.DRIVERS] = [SyncPage(records=[...])]
        services.orchestrator.request_sync(SyncRequest(oauth_connection.connection_id))
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from unittest.mock import Mock

backend_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(backend_src))

os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "test-credential-key-32-chars-long-000")

import pytest

from config import Settings
from integrations.connection_manager import CreateConnectionParams
from integrations.container import build_integration_services
from integrations.credentials import ApiKeyCredential, IntegrationType, OAuthCredential
from integrations.domain import (
    DriverHOS,
    DutyStatus,
    EntityType,
    Owner,
    OwnerType,
    ProviderType,
)
from integrations.errors import ValidationError
from integrations.events import CanonicalEventType, InMemoryEventPublisher
from integrations.ports import AuthorizationCode, ProviderAdapter, ProviderWebhook, SyncPage
from integrations.registry import AdapterRegistry
from integrations.adapters.common import parse_timestamp

WEBHOOK_SECRET = "test-webhook-secret"
START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic clock; sleep() advances it instead of blocking."""

    def __init__(self):
        self.value = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += seconds


class FakeAdapter(ProviderAdapter):
    """Scriptable provider adapter.

    Queues hold results in call order; an Exception instance in a queue is
    raised instead of returned. pages maps an entity type to a list of
    SyncPage objects, exceptions or zero-argument callables (the cursor is
    the page index).
    """

    supported_integration_types = frozenset({IntegrationType.OAUTH, IntegrationType.API_KEY})
    supported_entity_types = frozenset(EntityType)
    signature_header = "X-Fake-Signature"
    webhook_event_map = {
        "token.revoked": CanonicalEventType.CONNECTION_REVOKED,
        "vehicle.location": CanonicalEventType.VEHICLE_LOCATION_UPDATED,
        "load.updated": CanonicalEventType.LOAD_UPDATED,
    }

    def __init__(self, provider_type: ProviderType, clock: FakeClock):
        self.provider_type = provider_type
        self.retry_attempts = 3
        self.clock = clock
        self.account_id: Optional[str] = "acct-1"
        self.test_results: list[Any] = []
        self.refresh_results: list[Any] = []
        self.pages: dict[EntityType, list[Any]] = {}
        self.calls: list[tuple] = []
        self.seen_tokens: list[str] = []

    @staticmethod
    def _next(queue: list, default: Any) -> Any:
        if not queue:
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def _record_token(self, connection) -> None:
        if connection.oauth_credential is not None:
            self.seen_tokens.append(connection.oauth_credential.access_token)

    def authenticate(self, artifact):
        if isinstance(artifact, AuthorizationCode):
            self.calls.append(("authenticate", artifact.code))
            return OAuthCredential(
                access_token=f"access-{artifact.code}",
                refresh_token="refresh-1",
                expires_at=self.clock() + timedelta(hours=1),
            )
        return artifact

    def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        return f"https://auth.example.com/authorize?redirect_uri={redirect_uri}&state={state}"

    def test_connection(self, connection) -> bool:
        self.calls.append(("test_connection", connection.connection_id))
        self._record_token(connection)
        return self._next(self.test_results, True)

    def fetch_account_id(self, credential) -> Optional[str]:
        return self.account_id

    def refresh_token(self, credential: OAuthCredential) -> OAuthCredential:
        self.calls.append(("refresh_token", credential.refresh_token))
        return self._next(
            self.refresh_results,
            OAuthCredential(
                access_token="refreshed-token",
                refresh_token="refresh-2",
                expires_at=self.clock() + timedelta(hours=1),
            ),
        )

    def sync_entity(self, connection, entity_type, window, cursor=None) -> SyncPage:
        self.calls.append(("sync_entity", entity_type, window))
        self._record_token(connection)
        index = int(cursor) if cursor else 0
        pages = self.pages.get(entity_type, [SyncPage()])
        item = pages[index]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item()
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return SyncPage(records=item.records, next_cursor=next_cursor, windowed=item.windowed)

    def get_driver_hos(self, connection, provider_driver_id: str) -> DriverHOS:
        self.calls.append(("get_driver_hos", provider_driver_id))
        self._record_token(connection)
        return DriverHOS(driver_id=provider_driver_id, duty_status=DutyStatus.DRIVING, drive_remaining_minutes=300)

    def push_load(self, connection, load) -> bool:
        self.calls.append(("push_load", load.load_id))
        return True

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        if not payload.get("eventType"):
            raise ValidationError("Webhook payload has no event type")
        return ProviderWebhook(
            event_type=payload["eventType"],
            event_id=payload.get("eventId"),
            account_id=payload.get("orgId"),
            connection_hint=payload.get("connectionId"),
            occurred_at=parse_timestamp(payload.get("eventTime")),
            entity_id=payload.get("entityId"),
            data=payload.get("data") or {},
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ticker() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CREDENTIAL_ENCRYPTION_KEY="test-credential-key-32-chars-long-000",
        REDIS_URL=None,
        WEBHOOK_GLOBAL_SECRET=WEBHOOK_SECRET,
        TOKEN_REFRESH_MARGIN_SECONDS=300,
        SYNC_OPERATION_TIMEOUT_SECONDS=300.0,
        PROVIDER_CONCURRENCY_LIMIT=2,
    )


@pytest.fixture
def eld_adapter(clock) -> FakeAdapter:
    return FakeAdapter(ProviderType.SAMSARA, clock)


@pytest.fixture
def tms_adapter(clock) -> FakeAdapter:
    adapter = FakeAdapter(ProviderType.MCLEOD, clock)
    adapter.account_id = None
    return adapter


@pytest.fixture
def registry(eld_adapter, tms_adapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(eld_adapter)
    registry.register(tms_adapter)
    return registry


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def validation_scheduler() -> Mock:
    return Mock()


@pytest.fixture
def services(settings, registry, publisher, clock, ticker, validation_scheduler):
    """In-memory container with fake time and the fake adapters."""
    services = build_integration_services(
        settings,
        in_memory=True,
        registry=registry,
        publisher=publisher,
        validation_scheduler=validation_scheduler,
        clock=clock,
        sleep=ticker.sleep,
        monotonic=ticker,
    )
    yield services
    services.close()


def make_oauth_params(
    clock: FakeClock,
    *,
    owner_id: str = "driver-1",
    expires_in: timedelta = timedelta(hours=1),
    refresh_token: Optional[str] = "refresh-1",
    settings: Optional[dict] = None,
) -> CreateConnectionParams:
    return CreateConnectionParams(
        owner=Owner(OwnerType.DRIVER, owner_id),
        provider_type=ProviderType.SAMSARA,
        integration_type=IntegrationType.OAUTH,
        credentials=OAuthCredential(
            access_token="access-1",
            refresh_token=refresh_token,
            expires_at=clock() + expires_in,
        ),
        settings=settings or {},
    )


def make_api_key_params(owner_id: str = "carrier-1", settings: Optional[dict] = None) -> CreateConnectionParams:
    return CreateConnectionParams(
        owner=Owner(OwnerType.CARRIER, owner_id),
        provider_type=ProviderType.MCLEOD,
        integration_type=IntegrationType.API_KEY,
        credentials=ApiKeyCredential(key="key-1", secret="secret-1"),
        settings=settings or {},
    )


@pytest.fixture
def oauth_connection(services, clock):
    """ACTIVE Samsara connection whose token is valid for an hour."""
    return services.manager.create(make_oauth_params(clock))


@pytest.fixture
def api_key_connection(services):
    """ACTIVE McLeod connection."""
    return services.manager.create(make_api_key_params())
