"""Domain types shared by the integration framework."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .credentials import Credential, IntegrationType, OAuthCredential


class ProviderCategory(str, Enum):
    ELD = "eld"
    TMS = "tms"


class ProviderType(str, Enum):
    KEEPTRUCKIN = "keeptruckin"
    OMNITRACS = "omnitracs"
    SAMSARA = "samsara"
    MCLEOD = "mcleod"
    TMW = "tmw"
    MERCURYGATE = "mercurygate"

    @property
    def category(self) -> ProviderCategory:
        if self in (ProviderType.KEEPTRUCKIN, ProviderType.OMNITRACS, ProviderType.SAMSARA):
            return ProviderCategory.ELD
        return ProviderCategory.TMS


class OwnerType(str, Enum):
    DRIVER = "driver"
    CARRIER = "carrier"
    SHIPPER = "shipper"


class ConnectionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class SyncStatus(str, Enum):
    REQUESTED = "REQUESTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.PARTIAL_FAILURE, SyncStatus.FAILED)


class EntityType(str, Enum):
    LOADS = "loads"
    CARRIERS = "carriers"
    DRIVERS = "drivers"
    VEHICLES = "vehicles"


class EntityResultStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class LoadStatus(str, Enum):
    """Internal load lifecycle vocabulary."""
    CREATED = "CREATED"
    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    IN_TRANSIT = "IN_TRANSIT"
    AT_PICKUP = "AT_PICKUP"
    LOADED = "LOADED"
    AT_DROPOFF = "AT_DROPOFF"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DELAYED = "DELAYED"
    EXCEPTION = "EXCEPTION"


class DutyStatus(str, Enum):
    DRIVING = "DRIVING"
    ON_DUTY = "ON_DUTY"
    OFF_DUTY = "OFF_DUTY"
    SLEEPER_BERTH = "SLEEPER_BERTH"


@dataclass(frozen=True)
class Owner:
    owner_type: OwnerType
    owner_id: str

    def __str__(self) -> str:
        return f"{self.owner_type.value}:{self.owner_id}"


@dataclass(frozen=True)
class Connection:
    """An owner's authenticated link to one provider.

    credentials is None on records read straight from the repository and on
    revoked connections (secret material is wiped on revocation).
    """
    connection_id: str
    owner: Owner
    provider_type: ProviderType
    integration_type: IntegrationType
    status: ConnectionStatus
    created_at: datetime
    updated_at: datetime
    credentials: Optional[Credential] = field(default=None, repr=False, compare=False)
    settings: dict[str, Any] = field(default_factory=dict)
    provider_account_id: Optional[str] = None
    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None

    @property
    def oauth_credential(self) -> Optional[OAuthCredential]:
        if isinstance(self.credentials, OAuthCredential):
            return self.credentials
        return None

    def without_credentials(self) -> "Connection":
        return replace(self, credentials=None)

    def provider_driver_id(self, driver_id: str) -> str:
        """Map an internal driver id to the provider's driver id."""
        mapping = self.settings.get("driver_mapping") or {}
        return str(mapping.get(driver_id, driver_id))


@dataclass(frozen=True)
class SyncWindow:
    """Half-open [start, end) window for incremental sync."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, ts: datetime) -> bool:
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts >= self.end:
            return False
        return True


@dataclass(frozen=True)
class SyncRequest:
    connection_id: str
    entity_types: Optional[tuple[EntityType, ...]] = None
    force: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass(frozen=True)
class EntityResult:
    status: EntityResultStatus
    count_processed: int = 0
    error: Optional[str] = None
    skipped_stale: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "count_processed": self.count_processed,
            "status": self.status.value,
            "error": self.error,
            "skipped_stale": self.skipped_stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityResult":
        return cls(
            status=EntityResultStatus(data["status"]),
            count_processed=data.get("count_processed", 0),
            error=data.get("error"),
            skipped_stale=data.get("skipped_stale", 0),
        )


@dataclass(frozen=True)
class SyncOperation:
    sync_id: str
    connection_id: str
    entity_types: tuple[EntityType, ...]
    status: SyncStatus
    force: bool = False
    window: SyncWindow = field(default_factory=SyncWindow)
    entity_results: dict[EntityType, EntityResult] = field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class Load:
    """Load payload pushed to a TMS."""
    load_id: str
    status: LoadStatus = LoadStatus.CREATED
    reference_number: Optional[str] = None
    shipper_id: Optional[str] = None
    carrier_id: Optional[str] = None
    driver_id: Optional[str] = None
    origin: dict[str, Any] = field(default_factory=dict)
    destination: dict[str, Any] = field(default_factory=dict)
    pickup_at: Optional[datetime] = None
    delivery_at: Optional[datetime] = None
    weight_lbs: Optional[float] = None
    rate: Optional[float] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "load_id": self.load_id,
            "status": self.status.value,
            "reference_number": self.reference_number,
            "shipper_id": self.shipper_id,
            "carrier_id": self.carrier_id,
            "driver_id": self.driver_id,
            "origin": self.origin,
            "destination": self.destination,
            "pickup_at": self.pickup_at.isoformat() if self.pickup_at else None,
            "delivery_at": self.delivery_at.isoformat() if self.delivery_at else None,
            "weight_lbs": self.weight_lbs,
            "rate": self.rate,
            **self.attributes,
        }


@dataclass(frozen=True)
class DriverHOS:
    """Current hours-of-service snapshot. Remaining times are in minutes."""
    driver_id: str
    duty_status: DutyStatus
    drive_remaining_minutes: Optional[int] = None
    shift_remaining_minutes: Optional[int] = None
    cycle_remaining_minutes: Optional[int] = None
    break_remaining_minutes: Optional[int] = None
    status_changed_at: Optional[datetime] = None
    vehicle_id: Optional[str] = None


@dataclass(frozen=True)
class HOSLogEntry:
    driver_id: str
    duty_status: DutyStatus
    start_at: datetime
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    vehicle_id: Optional[str] = None


@dataclass(frozen=True)
class DriverLocation:
    driver_id: str
    latitude: float
    longitude: float
    recorded_at: datetime
    heading: Optional[float] = None
    speed_mph: Optional[float] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
