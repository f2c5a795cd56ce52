"""Canonical events and the publisher interface.

Downstream consumers (load and driver state owners) receive provider
occurrences and sync results only as CanonicalEvent instances. Delivery
guarantees belong to the publisher implementation; publish() is
fire-and-forget from the framework's point of view.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class CanonicalEventType(str, Enum):
    CONNECTION_REVOKED = "connection.revoked"
    CONNECTION_STATUS_CHANGED = "connection.status_changed"
    DRIVER_HOS_UPDATED = "driver.hos_updated"
    DRIVER_LOCATION_UPDATED = "driver.location_updated"
    VEHICLE_LOCATION_UPDATED = "vehicle.location_updated"
    LOAD_CREATED = "load.created"
    LOAD_UPDATED = "load.updated"
    LOAD_STATUS_CHANGED = "load.status_changed"
    ENTITY_SYNCED = "entity.synced"
    SYNC_COMPLETED = "sync.completed"

    @property
    def is_revocation(self) -> bool:
        return self is CanonicalEventType.CONNECTION_REVOKED

    @property
    def state_scope(self) -> Optional[str]:
        """Namespace for the monotonic-timestamp guard.

        Load webhooks share the "loads" scope with synced load records so a
        slow sync cannot overwrite a newer webhook update.
        """
        return _STATE_SCOPES.get(self)


_STATE_SCOPES = {
    CanonicalEventType.DRIVER_HOS_UPDATED: "driver_hos",
    CanonicalEventType.DRIVER_LOCATION_UPDATED: "driver_location",
    CanonicalEventType.VEHICLE_LOCATION_UPDATED: "vehicle_location",
    CanonicalEventType.LOAD_CREATED: "loads",
    CanonicalEventType.LOAD_UPDATED: "loads",
    CanonicalEventType.LOAD_STATUS_CHANGED: "loads",
}


@dataclass(frozen=True)
class CanonicalEvent:
    event_type: CanonicalEventType
    connection_id: str
    provider_type: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "connection_id": self.connection_id,
            "provider_type": self.provider_type,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class EventPublisher(ABC):
    """Port for delivering canonical events to downstream consumers."""

    @abstractmethod
    def publish(self, event: CanonicalEvent) -> None:
        """Hand the event to the delivery mechanism.

        Implementations should not block on downstream processing.
        """
        pass


class LoggingEventPublisher(EventPublisher):
    """Writes events to the log. Default when no broker is configured."""

    def publish(self, event: CanonicalEvent) -> None:
        logger.info(
            f"Canonical event {event.event_type.value}",
            extra={
                "event_type": event.event_type.value,
                "connection_id": event.connection_id,
                "provider_type": event.provider_type,
                "event_id": event.event_id,
            },
        )


class InMemoryEventPublisher(EventPublisher):
    """Collects events in a list; used by tests and local tooling."""

    def __init__(self):
        self.events: list[CanonicalEvent] = []

    def publish(self, event: CanonicalEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: CanonicalEventType) -> list[CanonicalEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class CeleryEventPublisher(EventPublisher):
    """Sends each event as a Celery task message for downstream workers."""

    def __init__(self, celery_app, task_name: str = "integrations.canonical_event", queue: Optional[str] = None):
        self._app = celery_app
        self._task_name = task_name
        self._queue = queue

    def publish(self, event: CanonicalEvent) -> None:
        self._app.send_task(self._task_name, args=[event.to_dict()], queue=self._queue)


def safe_publish(publisher: EventPublisher, event: CanonicalEvent) -> bool:
    """Publish without letting delivery failures abort the caller.

    Returns:
        True if the publisher accepted the event
    """
    try:
        publisher.publish(event)
        return True
    except Exception as e:
        logger.error(
            f"Failed to publish {event.event_type.value}: {e}",
            extra={"event_type": event.event_type.value, "connection_id": event.connection_id},
            exc_info=True,
        )
        return False
