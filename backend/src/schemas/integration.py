"""Pydantic schemas handed over by the controller layer.

Request models convert into the framework's parameter objects; response
models are built from domain objects and never carry credential material.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from integrations.connection_manager import CreateConnectionParams, UpdateConnectionParams
from integrations.credentials import IntegrationType, credential_from_dict
from integrations.domain import (
    Connection,
    ConnectionStatus,
    EntityType,
    Load,
    LoadStatus,
    Owner,
    OwnerType,
    ProviderType,
    SyncOperation,
    SyncRequest,
    SyncStatus,
)
from integrations.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse(model: Type[M], data: Any) -> M:
    """Validate raw input into a schema.

    Raises:
        ValidationError: Input does not match the schema
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e


# =============================================================================
# Connections
# =============================================================================

class ConnectionSettings(BaseModel):
    """Recognised connection settings. Unknown keys are kept as-is."""
    model_config = ConfigDict(extra="allow")

    base_url: Optional[str] = None
    company_code: Optional[str] = None
    sync_frequency_minutes: Optional[int] = Field(None, ge=1, le=10080)
    sync_entities: Optional[List[EntityType]] = None
    auto_sync_enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, repr=False)
    provider_account_id: Optional[str] = None
    driver_mapping: Dict[str, str] = Field(default_factory=dict)

    @field_validator("sync_entities", mode="before")
    @classmethod
    def split_entity_list(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        if not data.get("driver_mapping"):
            data.pop("driver_mapping", None)
        return data


class ConnectionCreate(BaseModel):
    owner_type: OwnerType
    owner_id: str = Field(..., min_length=1, max_length=200)
    provider_type: ProviderType
    integration_type: IntegrationType
    credentials: Dict[str, Any] = Field(..., repr=False)
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)

    @field_validator("owner_id")
    @classmethod
    def validate_owner_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("owner_id cannot be empty or whitespace")
        return v.strip()

    def to_params(self) -> CreateConnectionParams:
        """Build manager parameters; the credential shape is checked here."""
        return CreateConnectionParams(
            owner=Owner(self.owner_type, self.owner_id),
            provider_type=self.provider_type,
            integration_type=self.integration_type,
            credentials=credential_from_dict(self.integration_type, self.credentials),
            settings=self.settings.to_dict(),
        )


class ConnectionUpdate(BaseModel):
    """Partial update (all fields optional)"""
    credentials: Optional[Dict[str, Any]] = Field(None, repr=False)
    settings: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def require_some_change(self) -> "ConnectionUpdate":
        if self.credentials is None and self.settings is None:
            raise ValueError("Provide credentials and/or settings")
        return self

    def to_params(self, integration_type: IntegrationType) -> UpdateConnectionParams:
        settings = None
        if self.settings is not None:
            settings = parse(ConnectionSettings, self.settings).model_dump(mode="json", exclude_unset=True)
        credentials = None
        if self.credentials is not None:
            credentials = credential_from_dict(integration_type, self.credentials)
        return UpdateConnectionParams(credentials=credentials, settings=settings)


class ConnectionRead(BaseModel):
    """Connection as returned to callers. Credentials are never included."""
    connection_id: str
    owner_type: OwnerType
    owner_id: str
    provider_type: ProviderType
    integration_type: IntegrationType
    status: ConnectionStatus
    settings: Dict[str, Any]
    provider_account_id: Optional[str] = None
    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, connection: Connection) -> "ConnectionRead":
        settings = {k: v for k, v in connection.settings.items() if k != "webhook_secret"}
        if "webhook_secret" in connection.settings:
            settings["webhook_secret_configured"] = True
        return cls(
            connection_id=connection.connection_id,
            owner_type=connection.owner.owner_type,
            owner_id=connection.owner.owner_id,
            provider_type=connection.provider_type,
            integration_type=connection.integration_type,
            status=connection.status,
            settings=settings,
            provider_account_id=connection.provider_account_id,
            error_message=connection.error_message,
            last_sync_at=connection.last_sync_at,
            token_expires_at=connection.token_expires_at,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )


# =============================================================================
# Sync
# =============================================================================

class SyncRequestIn(BaseModel):
    entity_types: Optional[List[EntityType]] = None
    force: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_window(self) -> "SyncRequestIn":
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self

    def to_request(self, connection_id: str) -> SyncRequest:
        return SyncRequest(
            connection_id=connection_id,
            entity_types=tuple(self.entity_types) if self.entity_types else None,
            force=self.force,
            start_date=self.start_date,
            end_date=self.end_date,
        )


class EntityResultRead(BaseModel):
    status: str
    count_processed: int
    error: Optional[str] = None
    skipped_stale: int = 0


class SyncOperationRead(BaseModel):
    sync_id: str
    connection_id: str
    status: SyncStatus
    entity_types: List[EntityType]
    force: bool
    entity_results: Dict[str, EntityResultRead]
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, operation: SyncOperation) -> "SyncOperationRead":
        return cls(
            sync_id=operation.sync_id,
            connection_id=operation.connection_id,
            status=operation.status,
            entity_types=list(operation.entity_types),
            force=operation.force,
            entity_results={
                entity.value: EntityResultRead(**result.to_dict())
                for entity, result in operation.entity_results.items()
            },
            error_message=operation.error_message,
            started_at=operation.started_at,
            completed_at=operation.completed_at,
        )


# =============================================================================
# OAuth bootstrap
# =============================================================================

class AuthorizationUrlRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)
    provider_type: ProviderType
    redirect_uri: str = Field(..., min_length=1)
    state: Optional[str] = None


class CodeExchangeRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)
    provider_type: ProviderType
    code: str = Field(..., min_length=1, repr=False)
    redirect_uri: str = Field(..., min_length=1)
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)


# =============================================================================
# TMS loads
# =============================================================================

class LoadIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    load_id: str = Field(..., min_length=1)
    status: LoadStatus = LoadStatus.CREATED
    reference_number: Optional[str] = None
    shipper_id: Optional[str] = None
    carrier_id: Optional[str] = None
    driver_id: Optional[str] = None
    origin: Dict[str, Any] = Field(default_factory=dict)
    destination: Dict[str, Any] = Field(default_factory=dict)
    pickup_at: Optional[datetime] = None
    delivery_at: Optional[datetime] = None
    weight_lbs: Optional[float] = Field(None, ge=0)
    rate: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def validate_dates(self) -> "LoadIn":
        if self.pickup_at and self.delivery_at and self.pickup_at > self.delivery_at:
            raise ValueError("pickup_at must not be after delivery_at")
        return self

    def to_domain(self) -> Load:
        return Load(
            load_id=self.load_id,
            status=self.status,
            reference_number=self.reference_number,
            shipper_id=self.shipper_id,
            carrier_id=self.carrier_id,
            driver_id=self.driver_id,
            origin=self.origin,
            destination=self.destination,
            pickup_at=self.pickup_at,
            delivery_at=self.delivery_at,
            weight_lbs=self.weight_lbs,
            rate=self.rate,
            attributes=dict(self.model_extra or {}),
        )
