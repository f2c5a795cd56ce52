"""In-memory storage implementations.

Used by tests and by single-process deployments without a database. They
honour the same compare-and-set and single-active-operation rules as the
SQLAlchemy repositories.
"""

import threading
from datetime import datetime, timezone
from typing import Optional

from integrations.credentials import Credential
from integrations.domain import Connection, ConnectionStatus, Owner, ProviderType, SyncOperation, SyncStatus
from integrations.errors import ConflictError, NotFoundError
from integrations.storage import ConnectionRepository, CredentialVault, SyncOperationRepository

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryConnectionRepository(ConnectionRepository):
    """Connections keyed by connection_id. Stored records never carry credentials."""

    def __init__(self):
        self._rows: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._rows.get(connection_id)

    def put(self, connection: Connection, expected_updated_at: Optional[datetime] = None) -> None:
        record = connection.without_credentials()
        with self._lock:
            current = self._rows.get(connection.connection_id)
            if expected_updated_at is None:
                if current is not None:
                    raise ConflictError(f"Connection {connection.connection_id} already exists")
            else:
                if current is None:
                    raise NotFoundError(f"Connection {connection.connection_id} not found")
                if current.updated_at != expected_updated_at:
                    raise ConflictError(
                        f"Connection {connection.connection_id} was modified concurrently"
                    )
            self._rows[connection.connection_id] = record

    def delete(self, connection_id: str) -> bool:
        with self._lock:
            return self._rows.pop(connection_id, None) is not None

    def find_by_owner(self, owner: Owner, provider_type: Optional[ProviderType] = None) -> list[Connection]:
        with self._lock:
            return sorted(
                (
                    c for c in self._rows.values()
                    if c.owner == owner and (provider_type is None or c.provider_type == provider_type)
                ),
                key=lambda c: c.created_at,
            )

    def find_by_provider_account(self, provider_type: ProviderType, provider_account_id: str) -> list[Connection]:
        with self._lock:
            return [
                c for c in self._rows.values()
                if c.provider_type == provider_type and c.provider_account_id == provider_account_id
            ]

    def list_by_status(self, status: ConnectionStatus) -> list[Connection]:
        with self._lock:
            return [c for c in self._rows.values() if c.status == status]

    def list_expiring(self, before: datetime) -> list[Connection]:
        with self._lock:
            return [
                c for c in self._rows.values()
                if c.status == ConnectionStatus.ACTIVE
                and c.token_expires_at is not None
                and c.token_expires_at < before
            ]


class InMemorySyncOperationRepository(SyncOperationRepository):
    def __init__(self):
        self._rows: dict[str, SyncOperation] = {}
        self._lock = threading.Lock()

    def get(self, sync_id: str) -> Optional[SyncOperation]:
        with self._lock:
            return self._rows.get(sync_id)

    def put(self, operation: SyncOperation) -> None:
        with self._lock:
            current = self._rows.get(operation.sync_id)
            if current is not None and current.is_terminal:
                raise ConflictError(f"Sync operation {operation.sync_id} is already {current.status.value}")
            if not operation.is_terminal:
                for other in self._rows.values():
                    if (
                        other.connection_id == operation.connection_id
                        and other.sync_id != operation.sync_id
                        and not other.is_terminal
                    ):
                        raise ConflictError(
                            f"Connection {operation.connection_id} already has sync {other.sync_id} in progress"
                        )
            self._rows[operation.sync_id] = operation

    def find_active(self, connection_id: str) -> Optional[SyncOperation]:
        with self._lock:
            for op in self._rows.values():
                if op.connection_id == connection_id and op.status in (SyncStatus.REQUESTED, SyncStatus.IN_PROGRESS):
                    return op
        return None

    def list_for_connection(self, connection_id: str, limit: int = 20) -> list[SyncOperation]:
        with self._lock:
            ops = [op for op in self._rows.values() if op.connection_id == connection_id]
        ops.sort(key=lambda op: op.started_at or _NEVER, reverse=True)
        return ops[:limit]


class InMemoryCredentialVault(CredentialVault):
    """Plain dictionary vault. Credentials are immutable dataclasses, so no copying is needed."""

    def __init__(self):
        self._secrets: dict[str, Credential] = {}
        self._lock = threading.Lock()

    def read(self, connection_id: str) -> Optional[Credential]:
        with self._lock:
            return self._secrets.get(connection_id)

    def write(self, connection_id: str, credential: Credential) -> None:
        with self._lock:
            self._secrets[connection_id] = credential

    def delete(self, connection_id: str) -> None:
        with self._lock:
            self._secrets.pop(connection_id, None)
