"""SQLAlchemy models for the integration service"""

from .base import Base, PortableJSONB
from .integration_connection import IntegrationConnection
from .integration_credential import IntegrationCredential
from .sync_operation import SyncOperation

__all__ = [
    "Base",
    "PortableJSONB",
    "IntegrationConnection",
    "IntegrationCredential",
    "SyncOperation",
]
