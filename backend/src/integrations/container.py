"""Composition root for the integration framework.

Every service is constructed once here and handed to its collaborators
explicitly; no module keeps its own service singleton. Tests build their own
container with in-memory storage and injected clocks.
"""

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

import httpx

from config import Settings, get_settings
from .connection_manager import ConnectionManager
from .coordination import SyncCoordinator
from .domain import EntityType, utcnow
from .events import EventPublisher, LoggingEventPublisher
from .freshness import FreshnessGuard, InMemoryFreshnessGuard, RedisFreshnessGuard
from .gateway import ProviderGateway
from .oauth import OAuthBootstrap
from .registry import AdapterRegistry, build_default_registry
from .retry import RetryPolicy
from .storage import ConnectionRepository, CredentialVault, SyncOperationRepository
from .sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class IntegrationServices:
    settings: Settings
    registry: AdapterRegistry
    coordinator: SyncCoordinator
    repository: ConnectionRepository
    sync_repository: SyncOperationRepository
    vault: CredentialVault
    publisher: EventPublisher
    manager: ConnectionManager
    orchestrator: SyncOrchestrator
    gateway: ProviderGateway
    oauth: OAuthBootstrap
    freshness_guard: FreshnessGuard
    normalizer: "WebhookNormalizer"
    intake: "WebhookIntake"

    def close(self) -> None:
        self.registry.close()


def build_integration_services(
    settings: Optional[Settings] = None,
    *,
    in_memory: bool = False,
    session_factory=None,
    registry: Optional[AdapterRegistry] = None,
    transport: Optional[httpx.BaseTransport] = None,
    publisher: Optional[EventPublisher] = None,
    redis_client=None,
    validation_scheduler: Optional[Callable[[str], None]] = None,
    webhook_enqueue: Optional[Callable[[dict], None]] = None,
    clock: Callable = utcnow,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> IntegrationServices:
    """Wire the framework.

    Args:
        settings: Application settings (defaults to get_settings())
        in_memory: Use in-memory repositories and vault instead of SQLAlchemy
        session_factory: Session factory for the SQLAlchemy repositories
        registry: Prebuilt adapter registry (defaults to every shipped provider)
        transport: httpx transport for the default registry
        publisher: Canonical event publisher (defaults to logging)
        redis_client: Redis client for dedup and freshness; in-process stores if None
        validation_scheduler: Schedules background validation of PENDING connections
        webhook_enqueue: Queues webhook deliveries; processed inline if None
        clock, sleep, monotonic: Time sources (injected in tests)
    """
    from infrastructure.repositories import (
        EncryptedCredentialVault,
        InMemoryConnectionRepository,
        InMemoryCredentialVault,
        InMemorySyncOperationRepository,
        SqlAlchemyConnectionRepository,
        SqlAlchemySyncOperationRepository,
    )
    from infrastructure.encryption import CredentialEncryption
    from webhooks.dedup import InMemoryDedupStore, RedisDedupStore
    from webhooks.intake import WebhookIntake
    from webhooks.normalizer import WebhookNormalizer

    settings = settings or get_settings()
    registry = registry or build_default_registry(settings, transport=transport, clock=clock)
    coordinator = SyncCoordinator(settings.PROVIDER_CONCURRENCY_LIMIT)
    publisher = publisher or LoggingEventPublisher()
    retry_policy = RetryPolicy(
        base_delay_seconds=settings.RETRY_BACKOFF_BASE_SECONDS,
        max_delay_seconds=settings.RETRY_BACKOFF_MAX_SECONDS,
    )

    if in_memory:
        repository = InMemoryConnectionRepository()
        sync_repository = InMemorySyncOperationRepository()
        vault = InMemoryCredentialVault()
    else:
        repository = SqlAlchemyConnectionRepository(session_factory)
        sync_repository = SqlAlchemySyncOperationRepository(session_factory)
        vault = EncryptedCredentialVault(
            session_factory, CredentialEncryption(settings.CREDENTIAL_ENCRYPTION_KEY)
        )

    if redis_client is not None:
        freshness_guard = RedisFreshnessGuard(redis_client)
        dedup_store = RedisDedupStore(redis_client, settings.WEBHOOK_DEDUP_WINDOW_SECONDS)
    else:
        freshness_guard = InMemoryFreshnessGuard()
        dedup_store = InMemoryDedupStore(settings.WEBHOOK_DEDUP_WINDOW_SECONDS, monotonic=monotonic)

    manager = ConnectionManager(
        repository,
        vault,
        registry,
        coordinator,
        sync_repository,
        publisher,
        clock=clock,
        margin_seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS,
        retry_policy=retry_policy,
        validation_scheduler=validation_scheduler,
        sleep=sleep,
    )
    orchestrator = SyncOrchestrator(
        manager,
        registry,
        sync_repository,
        publisher,
        coordinator,
        retry_policy=retry_policy,
        operation_timeout_seconds=settings.SYNC_OPERATION_TIMEOUT_SECONDS,
        default_entity_types=tuple(EntityType(e) for e in settings.default_sync_entities),
        default_window_days=settings.DEFAULT_SYNC_WINDOW_DAYS,
        freshness_guard=freshness_guard,
        clock=clock,
        monotonic=monotonic,
        sleep=sleep,
    )
    normalizer = WebhookNormalizer(
        manager,
        registry,
        publisher,
        dedup_store,
        coordinator,
        freshness_guard=freshness_guard,
        global_secret=settings.WEBHOOK_GLOBAL_SECRET,
        bucket_seconds=settings.WEBHOOK_DEDUP_BUCKET_SECONDS,
    )

    return IntegrationServices(
        settings=settings,
        registry=registry,
        coordinator=coordinator,
        repository=repository,
        sync_repository=sync_repository,
        vault=vault,
        publisher=publisher,
        manager=manager,
        orchestrator=orchestrator,
        gateway=ProviderGateway(manager, registry, coordinator, retry_policy=retry_policy, sleep=sleep),
        oauth=OAuthBootstrap(registry, manager),
        freshness_guard=freshness_guard,
        normalizer=normalizer,
        intake=WebhookIntake(normalizer, enqueue=webhook_enqueue, clock=clock),
    )


@lru_cache()
def get_integration_services() -> IntegrationServices:
    """Process-wide services for workers, backed by the database, Redis and Celery."""
    from infrastructure.redis_store import get_redis_client
    from workers.celery_app import celery_app
    from workers.integration_tasks import process_webhook_task, validate_connection_task
    from .events import CeleryEventPublisher

    services = build_integration_services(
        publisher=CeleryEventPublisher(celery_app),
        redis_client=get_redis_client(),
        validation_scheduler=lambda connection_id: validate_connection_task.delay(connection_id),
        webhook_enqueue=lambda message: process_webhook_task.delay(message),
    )
    logger.info("Integration services initialised", extra={"provider_type": ",".join(services.registry.list_available())})
    return services
