"""SyncOperation model - one bounded synchronization attempt."""

import uuid

from sqlalchemy import Column, String, Text, Boolean, DateTime, Index, CheckConstraint, Uuid, text
from sqlalchemy.orm import validates

from .base import Base, PortableJSONB

SYNC_STATUSES = ("REQUESTED", "IN_PROGRESS", "SUCCESS", "PARTIAL_FAILURE", "FAILED")
ACTIVE_SYNC_PREDICATE = "status IN ('REQUESTED', 'IN_PROGRESS')"


class SyncOperation(Base):
    """Sync operation history.

    entity_results maps entity type to {count_processed, status, error}.
    Rows are immutable once status is terminal.
    """

    __tablename__ = "sync_operation"

    id = Column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    # No FK: history outlives a hard-deleted connection.
    connection_id = Column(Uuid(as_uuid=False), nullable=False)
    entity_types = Column(PortableJSONB, nullable=False)
    force = Column(Boolean, nullable=False, default=False)
    window_start = Column(DateTime(timezone=True), nullable=True)
    window_end = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default="REQUESTED")
    entity_results = Column(PortableJSONB, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('REQUESTED', 'IN_PROGRESS', 'SUCCESS', 'PARTIAL_FAILURE', 'FAILED')",
            name="ck_sync_operation_status",
        ),
        Index("idx_sync_operation_connection_status", connection_id, status),
        # At most one non-terminal operation per connection
        Index(
            "uq_sync_operation_active_connection",
            connection_id,
            unique=True,
            postgresql_where=text(ACTIVE_SYNC_PREDICATE),
            sqlite_where=text(ACTIVE_SYNC_PREDICATE),
        ),
    )

    @validates("status")
    def validate_status(self, key, value):
        if value not in SYNC_STATUSES:
            raise ValueError(f"Invalid status: {value}. Must be one of {SYNC_STATUSES}")
        return value

    def __repr__(self):
        return f"<SyncOperation(id={self.id}, connection_id={self.connection_id}, status={self.status})>"
