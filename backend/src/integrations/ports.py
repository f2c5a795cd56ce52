"""
ProviderAdapter - Port interface for ELD and TMS providers

Every provider variant implements this one capability interface. Orchestration
code invokes it without knowing which provider sits behind it; the
AdapterRegistry resolves provider_type to an adapter instance at startup.

Operations a variant does not support (TMS pushes on an ELD provider, HOS
reads on a TMS provider, token refresh on a non-OAuth connection) raise
ValidationError from the defaults below.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional, Union

from .credentials import Credential, IntegrationType, OAuthCredential
from .domain import (
    Connection,
    DriverHOS,
    DriverLocation,
    EntityType,
    HOSLogEntry,
    Load,
    LoadStatus,
    ProviderType,
    SyncWindow,
)
from .errors import ValidationError
from .events import CanonicalEventType


@dataclass(frozen=True)
class AuthorizationCode:
    """OAuth authorization-code artifact handed to authenticate()."""
    code: str
    redirect_uri: str


AuthorizationArtifact = Union[AuthorizationCode, Credential]


@dataclass(frozen=True)
class SyncRecord:
    """One provider entity.

    Attributes:
        external_id: Provider identifier for the entity
        data: Normalized entity payload
        source_updated_at: Provider-side modification time, if known
    """
    external_id: str
    data: dict[str, Any]
    source_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SyncPage:
    """One page of sync results.

    Attributes:
        records: Entities on this page
        next_cursor: Opaque cursor for the next page, None on the last page
        windowed: False if the provider ignored the window and returned a
            full snapshot
    """
    records: list[SyncRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    windowed: bool = True


@dataclass(frozen=True)
class ProviderWebhook:
    """Fields the normalizer extracts from a provider webhook payload.

    Attributes:
        event_type: Provider event name (e.g. "vehicle.location")
        event_id: Provider delivery id, used as the dedup key when present
        account_id: Provider account identifier for connection resolution
        connection_hint: Connection id echoed back by providers that carry it
        occurred_at: Source timestamp of the change
        entity_id: Identifier of the entity the event is about
        data: Event payload after provider-specific translation
    """
    event_type: str
    event_id: Optional[str] = None
    account_id: Optional[str] = None
    connection_hint: Optional[str] = None
    occurred_at: Optional[datetime] = None
    entity_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """
    Abstract interface for provider adapters.

    Class attributes describe the variant; registration uses provider_type.
    All methods raise only errors from integrations.errors.

    Implementations:
    - KeepTruckinAdapter, OmnitracsAdapter, SamsaraAdapter (ELD, OAuth2)
    - McLeodAdapter, TMWAdapter, MercuryGateAdapter (TMS, api_key/sftp/edi)
    """

    provider_type: ClassVar[ProviderType]
    supported_integration_types: ClassVar[frozenset[IntegrationType]] = frozenset()
    supported_entity_types: ClassVar[frozenset[EntityType]] = frozenset()
    signature_header: ClassVar[str] = "X-Signature"
    webhook_event_map: ClassVar[dict[str, CanonicalEventType]] = {}

    retry_attempts: int = 3

    @abstractmethod
    def authenticate(self, artifact: AuthorizationArtifact) -> Credential:
        """
        Exchange an authorization artifact for a usable credential.

        Args:
            artifact: AuthorizationCode for OAuth providers, otherwise the
                      API key / SFTP / EDI credential to verify

        Returns:
            Credential ready to store on a connection

        Raises:
            AuthenticationError: Artifact rejected by the provider
            ProviderUnavailableError: Transient failure
        """
        pass

    @abstractmethod
    def sync_entity(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> SyncPage:
        """
        Pull one page of provider data for an entity type.

        Providers that support windowed queries honor window; the rest ignore
        it and return a full snapshot (SyncPage.windowed=False).

        Raises:
            ValidationError: Entity type not supported by this provider/transport
            AuthenticationError, ProviderUnavailableError, RateLimitError
        """
        pass

    @abstractmethod
    def test_connection(self, connection: Connection) -> bool:
        """
        Lightweight call (profile, ping) that validates the credential.

        Must not mutate provider or connection state.

        Returns:
            True if the provider accepted the credential

        Raises:
            AuthenticationError: Credential rejected
            ProviderUnavailableError: Provider unreachable
        """
        pass

    def refresh_token(self, credential: OAuthCredential) -> OAuthCredential:
        """
        Obtain a new access token using the refresh token.

        Raises:
            AuthenticationError: Refresh token rejected (revoked=True signals
                                 permanent revocation)
            ProviderUnavailableError: Transient failure
        """
        raise ValidationError(
            f"{self.provider_type.value} does not support token refresh",
            provider_type=self.provider_type.value,
        )

    def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        raise ValidationError(
            f"{self.provider_type.value} does not support OAuth authorization",
            provider_type=self.provider_type.value,
        )

    def fetch_account_id(self, credential: Credential) -> Optional[str]:
        """Provider account identifier used to resolve webhooks, if obtainable."""
        return None

    def push_load(self, connection: Connection, load: Load) -> bool:
        raise ValidationError(
            f"{self.provider_type.value} does not accept load pushes",
            provider_type=self.provider_type.value,
        )

    def update_load_status(self, connection: Connection, load_id: str, status: LoadStatus) -> bool:
        raise ValidationError(
            f"{self.provider_type.value} does not accept load status updates",
            provider_type=self.provider_type.value,
        )

    def get_driver_hos(self, connection: Connection, provider_driver_id: str) -> DriverHOS:
        raise ValidationError(
            f"{self.provider_type.value} does not provide hours of service",
            provider_type=self.provider_type.value,
        )

    def get_driver_hos_logs(
        self,
        connection: Connection,
        provider_driver_id: str,
        start: datetime,
        end: datetime,
    ) -> list[HOSLogEntry]:
        raise ValidationError(
            f"{self.provider_type.value} does not provide hours-of-service logs",
            provider_type=self.provider_type.value,
        )

    def get_driver_location(self, connection: Connection, provider_driver_id: str) -> DriverLocation:
        raise ValidationError(
            f"{self.provider_type.value} does not provide driver locations",
            provider_type=self.provider_type.value,
        )

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        """
        Extract the fields the normalizer needs from a decoded webhook body.

        Raises:
            ValidationError: Payload lacks the event type
        """
        pass

    def canonical_event_type(self, provider_event_type: str) -> Optional[CanonicalEventType]:
        """Map a provider event name to a canonical type; None means ignore."""
        return self.webhook_event_map.get(provider_event_type)

    def supports(self, integration_type: IntegrationType) -> bool:
        return integration_type in self.supported_integration_types

    def close(self) -> None:
        """Release network resources held by the adapter."""
        pass
