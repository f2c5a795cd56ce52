"""
TMS adapter base

TMS providers are reached by API key, SFTP file drop or EDI. The transport
is chosen from the connection's integration_type; provider subclasses only
implement the API endpoints and their load status vocabulary.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Optional

from ..base_adapter import HttpProviderAdapter
from ..credentials import ApiKeyCredential, Credential, EdiCredential, IntegrationType, SftpCredential
from ..domain import Connection, EntityType, Load, LoadStatus, SyncWindow
from ..edi import render_load_tender, render_status_message
from ..errors import AuthenticationError, ValidationError
from ..events import CanonicalEventType
from ..ports import AuthorizationArtifact, AuthorizationCode, ProviderWebhook, SyncPage
from .common import parse_timestamp, require_event_type
from .transports import EdiExchange, SftpExchange

logger = logging.getLogger(__name__)

# ISA13 is nine digits
MAX_CONTROL_NUMBER = 1_000_000_000

TMS_WEBHOOK_EVENTS = {
    "load.created": CanonicalEventType.LOAD_CREATED,
    "load.updated": CanonicalEventType.LOAD_UPDATED,
    "load.status_changed": CanonicalEventType.LOAD_STATUS_CHANGED,
    "connection.revoked": CanonicalEventType.CONNECTION_REVOKED,
    "access.revoked": CanonicalEventType.CONNECTION_REVOKED,
}


class TmsProviderAdapter(HttpProviderAdapter, ABC):
    """
    Base class for TMS adapters.

    Subclasses must implement:
    - _api_ping(base_url, credential)
    - _api_sync(connection, entity_type, window, cursor) -> SyncPage
    - _api_push_load(connection, payload) -> bool
    - _api_update_status(connection, load_id, provider_status) -> bool
    """

    supported_integration_types = frozenset({
        IntegrationType.API_KEY,
        IntegrationType.SFTP,
        IntegrationType.EDI,
    })
    supported_entity_types = frozenset(EntityType)
    webhook_event_map = TMS_WEBHOOK_EVENTS

    # Internal status -> provider status; unmapped statuses use DEFAULT_PROVIDER_STATUS
    LOAD_STATUS_MAP: ClassVar[dict[LoadStatus, str]] = {}
    DEFAULT_PROVIDER_STATUS: ClassVar[Optional[str]] = None

    def __init__(self, config, **kwargs):
        super().__init__(config, **kwargs)
        self._sftp = SftpExchange(
            self.provider_type.value,
            client_factory=self._sftp_client_factory,
            timeout=self.timeout,
        )
        self._edi = EdiExchange(self)
        self._control_lock = threading.Lock()
        self._last_control_number = 0

    # Status vocabulary

    def to_provider_status(self, status: LoadStatus) -> str:
        if status in self.LOAD_STATUS_MAP:
            return self.LOAD_STATUS_MAP[status]
        return self.DEFAULT_PROVIDER_STATUS or status.value

    def from_provider_status(self, provider_status: Optional[str]) -> Optional[LoadStatus]:
        if not provider_status:
            return None
        for internal, external in self.LOAD_STATUS_MAP.items():
            if external == provider_status:
                return internal
        try:
            return LoadStatus(provider_status)
        except ValueError:
            return None

    def build_load_payload(self, load: Load) -> dict[str, Any]:
        return {**load.to_dict(), "status": self.to_provider_status(load.status)}

    # Capability interface

    def authenticate(self, artifact: AuthorizationArtifact) -> Credential:
        if isinstance(artifact, AuthorizationCode):
            raise ValidationError(
                f"{self.provider_type.value} does not use OAuth authorization codes",
                provider_type=self.provider_type.value,
            )
        if not self.supports(artifact.integration_type):
            raise ValidationError(
                f"{self.provider_type.value} does not support {artifact.integration_type.value} connections",
                provider_type=self.provider_type.value,
            )
        if not self._verify(artifact, self.base_url()):
            raise AuthenticationError(
                f"{self.provider_type.value} rejected the supplied credentials",
                provider_type=self.provider_type.value,
            )
        return artifact

    def test_connection(self, connection: Connection) -> bool:
        return self._verify(self.require_credential(connection), self.base_url(connection))

    def _verify(self, credential: Credential, base_url: str) -> bool:
        if isinstance(credential, ApiKeyCredential):
            self._api_ping(base_url, credential)
            return True
        if isinstance(credential, SftpCredential):
            return self._sftp.test(credential)
        if isinstance(credential, EdiCredential):
            return self._edi.test(credential)
        raise ValidationError(
            f"{self.provider_type.value} cannot verify {credential.integration_type.value} credentials",
            provider_type=self.provider_type.value,
        )

    def sync_entity(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str] = None,
    ) -> SyncPage:
        credential = self.require_credential(connection)
        if isinstance(credential, ApiKeyCredential):
            return self._api_sync(connection, entity_type, window, cursor)
        if isinstance(credential, SftpCredential):
            return self._sftp.pull(credential, entity_type, window, cursor)
        raise ValidationError(
            f"{self.provider_type.value} EDI connections do not support pulling {entity_type.value}",
            provider_type=self.provider_type.value,
        )

    def push_load(self, connection: Connection, load: Load) -> bool:
        credential = self.require_credential(connection)
        if isinstance(credential, ApiKeyCredential):
            return self._api_push_load(connection, self.build_load_payload(load))
        if isinstance(credential, SftpCredential):
            return self._sftp.write_load(credential, load.load_id, self.build_load_payload(load))
        now = self._clock()
        document = render_load_tender(load, credential, self._control_number(now), now)
        return self._edi.send(credential, document, operation="edi_204")

    def update_load_status(self, connection: Connection, load_id: str, status: LoadStatus) -> bool:
        credential = self.require_credential(connection)
        provider_status = self.to_provider_status(status)
        if isinstance(credential, ApiKeyCredential):
            return self._api_update_status(connection, load_id, provider_status)
        now = self._clock()
        if isinstance(credential, SftpCredential):
            return self._sftp.write_status(credential, load_id, provider_status, now)
        document = render_status_message(load_id, status, credential, self._control_number(now), now)
        return self._edi.send(credential, document, operation="edi_214")

    def parse_webhook(self, payload: dict[str, Any]) -> ProviderWebhook:
        event_type = require_event_type(payload, "eventType", "event_type")
        load = payload.get("load") or {}
        load_id = payload.get("loadId") or load.get("id") or load.get("load_id")

        data = dict(load)
        raw_status = payload.get("status") or load.get("status")
        if raw_status:
            internal = self.from_provider_status(raw_status)
            data["provider_status"] = raw_status
            data["status"] = internal.value if internal else raw_status
        if load_id is not None:
            data.setdefault("load_id", str(load_id))

        return ProviderWebhook(
            event_type=event_type,
            event_id=payload.get("eventId"),
            account_id=payload.get("accountId") or payload.get("companyCode"),
            connection_hint=payload.get("connectionId"),
            occurred_at=parse_timestamp(
                payload.get("timestamp") or load.get("updated_at") or load.get("modified_date")
            ),
            entity_id=str(load_id) if load_id is not None else None,
            data=data,
        )

    def _control_number(self, now) -> int:
        """Next X12 interchange control number.

        Strictly increasing within the process and seeded from the clock, so
        documents sent in the same second never share a number.
        """
        with self._control_lock:
            candidate = max(self._last_control_number + 1, int(now.timestamp()) % MAX_CONTROL_NUMBER)
            self._last_control_number = candidate if candidate < MAX_CONTROL_NUMBER else 1
            return self._last_control_number

    # Provider API surface

    @abstractmethod
    def _api_ping(self, base_url: str, credential: ApiKeyCredential) -> None:
        pass

    @abstractmethod
    def _api_sync(
        self,
        connection: Connection,
        entity_type: EntityType,
        window: SyncWindow,
        cursor: Optional[str],
    ) -> SyncPage:
        pass

    @abstractmethod
    def _api_push_load(self, connection: Connection, payload: dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def _api_update_status(self, connection: Connection, load_id: str, provider_status: str) -> bool:
        pass
