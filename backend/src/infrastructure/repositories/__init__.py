"""Storage implementations for the integration framework."""

from .memory import InMemoryConnectionRepository, InMemoryCredentialVault, InMemorySyncOperationRepository
from .sqlalchemy_repositories import (
    EncryptedCredentialVault,
    SqlAlchemyConnectionRepository,
    SqlAlchemySyncOperationRepository,
)

__all__ = [
    "InMemoryConnectionRepository",
    "InMemoryCredentialVault",
    "InMemorySyncOperationRepository",
    "EncryptedCredentialVault",
    "SqlAlchemyConnectionRepository",
    "SqlAlchemySyncOperationRepository",
]
