"""SQLAlchemy repositories for connections, sync operations and credentials.

Each repository receives a session factory and runs every call in its own
session_scope, so a repository call is one transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import session_scope
from infrastructure.encryption import CredentialEncryption
from integrations.credentials import Credential, IntegrationType, credential_from_dict
from integrations.domain import (
    Connection,
    ConnectionStatus,
    EntityResult,
    EntityType,
    Owner,
    OwnerType,
    ProviderType,
    SyncOperation,
    SyncStatus,
    SyncWindow,
)
from integrations.errors import ConflictError, NotFoundError
from integrations.storage import ConnectionRepository, CredentialVault, SyncOperationRepository
from models.integration_connection import IntegrationConnection as ConnectionModel
from models.integration_credential import IntegrationCredential as CredentialModel
from models.sync_operation import SyncOperation as SyncOperationModel

logger = logging.getLogger(__name__)

ACTIVE_SYNC_STATUSES = (SyncStatus.REQUESTED.value, SyncStatus.IN_PROGRESS.value)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _connection_to_domain(row: ConnectionModel) -> Connection:
    return Connection(
        connection_id=str(row.id),
        owner=Owner(OwnerType(row.owner_type), row.owner_id),
        provider_type=ProviderType(row.provider_type),
        integration_type=IntegrationType(row.integration_type),
        status=ConnectionStatus(row.status),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        settings=dict(row.settings or {}),
        provider_account_id=row.provider_account_id,
        error_message=row.error_message,
        last_sync_at=_aware(row.last_sync_at),
        token_expires_at=_aware(row.token_expires_at),
    )


def _connection_values(connection: Connection) -> dict:
    return {
        "owner_type": connection.owner.owner_type.value,
        "owner_id": connection.owner.owner_id,
        "provider_type": connection.provider_type.value,
        "integration_type": connection.integration_type.value,
        "provider_account_id": connection.provider_account_id,
        "settings": dict(connection.settings),
        "status": connection.status.value,
        "error_message": connection.error_message,
        "last_sync_at": connection.last_sync_at,
        "token_expires_at": connection.token_expires_at,
        "created_at": connection.created_at,
        "updated_at": connection.updated_at,
    }


class SqlAlchemyConnectionRepository(ConnectionRepository):
    """Repository for integration_connection rows.

    Writes are compare-and-set on updated_at: an UPDATE whose WHERE clause
    matches no row means another writer got there first.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        """Initialize repository.

        Args:
            session_factory: Session factory; defaults to the process-wide one
        """
        self._session_factory = session_factory

    def get(self, connection_id: str) -> Optional[Connection]:
        with session_scope(self._session_factory) as session:
            row = session.get(ConnectionModel, connection_id)
            return _connection_to_domain(row) if row else None

    def put(self, connection: Connection, expected_updated_at: Optional[datetime] = None) -> None:
        values = _connection_values(connection)
        with session_scope(self._session_factory) as session:
            if expected_updated_at is None:
                if session.get(ConnectionModel, connection.connection_id) is not None:
                    raise ConflictError(f"Connection {connection.connection_id} already exists")
                session.add(ConnectionModel(id=connection.connection_id, **values))
                try:
                    session.flush()
                except IntegrityError as e:
                    raise ConflictError(f"Connection {connection.connection_id} already exists") from e
                return

            result = session.execute(
                update(ConnectionModel)
                .where(
                    ConnectionModel.id == connection.connection_id,
                    ConnectionModel.updated_at == expected_updated_at,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                if session.get(ConnectionModel, connection.connection_id) is None:
                    raise NotFoundError(f"Connection {connection.connection_id} not found")
                raise ConflictError(f"Connection {connection.connection_id} was modified concurrently")

    def delete(self, connection_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            session.execute(delete(CredentialModel).where(CredentialModel.connection_id == connection_id))
            result = session.execute(delete(ConnectionModel).where(ConnectionModel.id == connection_id))
            return result.rowcount > 0

    def find_by_owner(self, owner: Owner, provider_type: Optional[ProviderType] = None) -> list[Connection]:
        stmt = select(ConnectionModel).where(
            ConnectionModel.owner_type == owner.owner_type.value,
            ConnectionModel.owner_id == owner.owner_id,
        )
        if provider_type is not None:
            stmt = stmt.where(ConnectionModel.provider_type == provider_type.value)
        stmt = stmt.order_by(ConnectionModel.created_at)
        with session_scope(self._session_factory) as session:
            return [_connection_to_domain(row) for row in session.execute(stmt).scalars()]

    def find_by_provider_account(self, provider_type: ProviderType, provider_account_id: str) -> list[Connection]:
        stmt = select(ConnectionModel).where(
            ConnectionModel.provider_type == provider_type.value,
            ConnectionModel.provider_account_id == provider_account_id,
        )
        with session_scope(self._session_factory) as session:
            return [_connection_to_domain(row) for row in session.execute(stmt).scalars()]

    def list_by_status(self, status: ConnectionStatus) -> list[Connection]:
        stmt = select(ConnectionModel).where(ConnectionModel.status == status.value)
        with session_scope(self._session_factory) as session:
            return [_connection_to_domain(row) for row in session.execute(stmt).scalars()]

    def list_expiring(self, before: datetime) -> list[Connection]:
        stmt = select(ConnectionModel).where(
            ConnectionModel.status == ConnectionStatus.ACTIVE.value,
            ConnectionModel.token_expires_at.is_not(None),
            ConnectionModel.token_expires_at < before,
        )
        with session_scope(self._session_factory) as session:
            return [_connection_to_domain(row) for row in session.execute(stmt).scalars()]


def _operation_to_domain(row: SyncOperationModel) -> SyncOperation:
    return SyncOperation(
        sync_id=str(row.id),
        connection_id=str(row.connection_id),
        entity_types=tuple(EntityType(e) for e in row.entity_types or []),
        status=SyncStatus(row.status),
        force=bool(row.force),
        window=SyncWindow(start=_aware(row.window_start), end=_aware(row.window_end)),
        entity_results={
            EntityType(name): EntityResult.from_dict(result)
            for name, result in (row.entity_results or {}).items()
        },
        error_message=row.error_message,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _operation_values(operation: SyncOperation) -> dict:
    return {
        "connection_id": operation.connection_id,
        "entity_types": [e.value for e in operation.entity_types],
        "force": operation.force,
        "window_start": operation.window.start,
        "window_end": operation.window.end,
        "status": operation.status.value,
        "entity_results": {e.value: r.to_dict() for e, r in operation.entity_results.items()},
        "error_message": operation.error_message,
        "started_at": operation.started_at,
        "completed_at": operation.completed_at,
    }


class SqlAlchemySyncOperationRepository(SyncOperationRepository):
    """Repository for sync_operation rows.

    The partial unique index on connection_id for non-terminal rows turns a
    second concurrent operation into an IntegrityError, reported as
    ConflictError.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def get(self, sync_id: str) -> Optional[SyncOperation]:
        with session_scope(self._session_factory) as session:
            row = session.get(SyncOperationModel, sync_id)
            return _operation_to_domain(row) if row else None

    def put(self, operation: SyncOperation) -> None:
        values = _operation_values(operation)
        with session_scope(self._session_factory) as session:
            row = session.get(SyncOperationModel, operation.sync_id)
            if row is None:
                session.add(SyncOperationModel(id=operation.sync_id, **values))
            elif SyncStatus(row.status).is_terminal:
                raise ConflictError(f"Sync operation {operation.sync_id} is already {row.status}")
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            try:
                session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Connection {operation.connection_id} already has a sync in progress"
                ) from e

    def find_active(self, connection_id: str) -> Optional[SyncOperation]:
        stmt = select(SyncOperationModel).where(
            SyncOperationModel.connection_id == connection_id,
            SyncOperationModel.status.in_(ACTIVE_SYNC_STATUSES),
        )
        with session_scope(self._session_factory) as session:
            row = session.execute(stmt).scalars().first()
            return _operation_to_domain(row) if row else None

    def list_for_connection(self, connection_id: str, limit: int = 20) -> list[SyncOperation]:
        stmt = (
            select(SyncOperationModel)
            .where(SyncOperationModel.connection_id == connection_id)
            .order_by(SyncOperationModel.started_at.desc())
            .limit(limit)
        )
        with session_scope(self._session_factory) as session:
            return [_operation_to_domain(row) for row in session.execute(stmt).scalars()]


class EncryptedCredentialVault(CredentialVault):
    """Stores credentials AES-GCM encrypted in integration_credential.

    The encryption context binds each envelope to its connection id, so an
    envelope copied onto another row fails to decrypt.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        encryption: Optional[CredentialEncryption] = None,
    ):
        self._session_factory = session_factory
        self._encryption = encryption or CredentialEncryption()

    @staticmethod
    def _context(connection_id: str) -> str:
        return f"integration_connection:{connection_id}"

    def read(self, connection_id: str) -> Optional[Credential]:
        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, connection_id)
            if row is None:
                return None
            integration_type = row.integration_type
            ciphertext = row.ciphertext_json

        payload = self._encryption.decrypt_from_json(ciphertext, self._context(connection_id))
        return credential_from_dict(integration_type, payload)

    def write(self, connection_id: str, credential: Credential) -> None:
        envelope = self._encryption.encrypt(credential.to_dict(), self._context(connection_id))
        with session_scope(self._session_factory) as session:
            row = session.get(CredentialModel, connection_id)
            if row is None:
                session.add(
                    CredentialModel(
                        connection_id=connection_id,
                        integration_type=credential.integration_type.value,
                        ciphertext_json=envelope.to_json(),
                    )
                )
            else:
                row.integration_type = credential.integration_type.value
                row.ciphertext_json = envelope.to_json()
        logger.debug(
            f"Stored {credential.integration_type.value} credential",
            extra={"connection_id": connection_id},
        )

    def delete(self, connection_id: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(CredentialModel).where(CredentialModel.connection_id == connection_id))
