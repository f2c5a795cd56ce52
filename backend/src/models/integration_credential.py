"""IntegrationCredential model - encrypted secret material per connection."""

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class IntegrationCredential(Base):
    """Encrypted credential envelope for a connection.

    ciphertext_json holds the AES-GCM envelope produced by
    infrastructure.encryption.CredentialEncryption; it is bound to the
    connection id through the associated data.
    """

    __tablename__ = "integration_credential"

    connection_id = Column(
        Uuid(as_uuid=False),
        ForeignKey("integration_connection.id", ondelete="CASCADE"),
        primary_key=True,
    )
    integration_type = Column(String(16), nullable=False)
    ciphertext_json = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    connection = relationship("IntegrationConnection", back_populates="credential")

    def __repr__(self):
        return f"<IntegrationCredential(connection_id={self.connection_id}, type={self.integration_type})>"
