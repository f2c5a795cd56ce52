"""IntegrationConnection model - one owner's link to an ELD or TMS provider."""

import uuid

from sqlalchemy import Column, String, Text, DateTime, Index, CheckConstraint, Uuid
from sqlalchemy.orm import relationship, validates

from .base import Base, PortableJSONB, utcnow

CONNECTION_STATUSES = ("PENDING", "ACTIVE", "ERROR", "EXPIRED", "REVOKED")
INTEGRATION_TYPES = ("oauth", "api_key", "sftp", "edi")


class IntegrationConnection(Base):
    """Persisted connection record.

    Secret material lives in integration_credential, never in this row.
    updated_at is the compare-and-set token for every write.

    Attributes:
        id: Primary key UUID (connection_id)
        owner_type: driver | carrier | shipper
        owner_id: Owner reference
        provider_type: Provider identifier, immutable after creation
        integration_type: oauth | api_key | sftp | edi
        provider_account_id: Provider-side account identifier (webhook resolution)
        settings: Provider-specific configuration
        status: PENDING | ACTIVE | ERROR | EXPIRED | REVOKED
        token_expires_at: OAuth access token expiry (denormalized for sweeps)
    """

    __tablename__ = "integration_connection"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_type = Column(String(32), nullable=False)
    owner_id = Column(String(255), nullable=False)
    provider_type = Column(String(64), nullable=False)
    integration_type = Column(String(16), nullable=False)
    provider_account_id = Column(String(255), nullable=True)
    settings = Column(PortableJSONB, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="PENDING")
    error_message = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    credential = relationship(
        "IntegrationCredential",
        back_populates="connection",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'ERROR', 'EXPIRED', 'REVOKED')",
            name="ck_integration_connection_status",
        ),
        CheckConstraint(
            "integration_type IN ('oauth', 'api_key', 'sftp', 'edi')",
            name="ck_integration_connection_integration_type",
        ),
        Index("idx_integration_connection_owner", owner_type, owner_id, provider_type),
        Index("idx_integration_connection_account", provider_type, provider_account_id),
        Index("idx_integration_connection_status", status),
    )

    @validates("status")
    def validate_status(self, key, value):
        if value not in CONNECTION_STATUSES:
            raise ValueError(f"Invalid status: {value}. Must be one of {CONNECTION_STATUSES}")
        return value

    def __repr__(self):
        return (
            f"<IntegrationConnection(id={self.id}, provider={self.provider_type}, "
            f"owner={self.owner_type}:{self.owner_id}, status={self.status})>"
        )
