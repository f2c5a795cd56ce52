"""
Storage ports - repositories for connections and sync operations, and the
credential vault

Implementations live in infrastructure.repositories (SQLAlchemy and
in-memory). The framework depends only on these interfaces.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .credentials import Credential
from .domain import Connection, ConnectionStatus, Owner, ProviderType, SyncOperation


class ConnectionRepository(ABC):
    """
    Persistence for Connection records (without secret material).

    put() is a compare-and-set on updated_at: expected_updated_at=None means
    insert-only, otherwise the stored row must still carry that timestamp.
    """

    @abstractmethod
    def get(self, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    def put(self, connection: Connection, expected_updated_at: Optional[datetime] = None) -> None:
        """
        Insert or conditionally update a connection.

        Raises:
            ConflictError: Row exists on insert, or updated_at no longer matches
            NotFoundError: Update of a row that does not exist
        """
        pass

    @abstractmethod
    def delete(self, connection_id: str) -> bool:
        """Hard-delete a connection. Returns False if it did not exist."""
        pass

    @abstractmethod
    def find_by_owner(self, owner: Owner, provider_type: Optional[ProviderType] = None) -> list[Connection]:
        pass

    @abstractmethod
    def find_by_provider_account(self, provider_type: ProviderType, provider_account_id: str) -> list[Connection]:
        pass

    @abstractmethod
    def list_by_status(self, status: ConnectionStatus) -> list[Connection]:
        pass

    @abstractmethod
    def list_expiring(self, before: datetime) -> list[Connection]:
        """ACTIVE connections whose token_expires_at is before the given time."""
        pass


class SyncOperationRepository(ABC):
    """
    Persistence for SyncOperation records.

    Terminal operations are immutable: put() on a stored terminal operation
    raises ConflictError.
    """

    @abstractmethod
    def get(self, sync_id: str) -> Optional[SyncOperation]:
        pass

    @abstractmethod
    def put(self, operation: SyncOperation) -> None:
        """
        Raises:
            ConflictError: Stored operation is terminal, or a second
                           non-terminal operation for the connection
        """
        pass

    @abstractmethod
    def find_active(self, connection_id: str) -> Optional[SyncOperation]:
        """The non-terminal operation for a connection, if any."""
        pass

    @abstractmethod
    def list_for_connection(self, connection_id: str, limit: int = 20) -> list[SyncOperation]:
        """Most recent first."""
        pass


class CredentialVault(ABC):
    """
    Secret storage keyed by connection_id.

    Encryption at rest is the implementation's concern; callers only see
    Credential objects. Implementations never log secret values.
    """

    @abstractmethod
    def read(self, connection_id: str) -> Optional[Credential]:
        pass

    @abstractmethod
    def write(self, connection_id: str, credential: Credential) -> None:
        pass

    @abstractmethod
    def delete(self, connection_id: str) -> None:
        pass
