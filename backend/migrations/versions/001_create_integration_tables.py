"""create integration connection, credential and sync operation tables

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_SYNC_PREDICATE = "status IN ('REQUESTED', 'IN_PROGRESS')"


def upgrade() -> None:
    """Create integration_connection, integration_credential and sync_operation."""

    op.create_table(
        'integration_connection',
        sa.Column('id', UUID(as_uuid=False), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_type', sa.String(32), nullable=False, comment='driver|carrier|shipper'),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('provider_type', sa.String(64), nullable=False),
        sa.Column('integration_type', sa.String(16), nullable=False),
        sa.Column('provider_account_id', sa.String(255), nullable=True, comment='Provider-side account id for webhook resolution'),
        sa.Column('settings', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACTIVE', 'ERROR', 'EXPIRED', 'REVOKED')",
            name='ck_integration_connection_status',
        ),
        sa.CheckConstraint(
            "integration_type IN ('oauth', 'api_key', 'sftp', 'edi')",
            name='ck_integration_connection_integration_type',
        ),
    )
    op.create_index(
        'idx_integration_connection_owner', 'integration_connection', ['owner_type', 'owner_id', 'provider_type']
    )
    op.create_index(
        'idx_integration_connection_account', 'integration_connection', ['provider_type', 'provider_account_id']
    )
    op.create_index('idx_integration_connection_status', 'integration_connection', ['status'])

    op.create_table(
        'integration_credential',
        sa.Column(
            'connection_id',
            UUID(as_uuid=False),
            sa.ForeignKey(
                'integration_connection.id',
                name='fk_integration_credential_connection_id',
                ondelete='CASCADE',
            ),
            primary_key=True,
        ),
        sa.Column('integration_type', sa.String(16), nullable=False),
        sa.Column('ciphertext_json', sa.Text, nullable=False, comment='AES-256-GCM envelope bound to the connection id'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_table(
        'sync_operation',
        sa.Column('id', UUID(as_uuid=False), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('connection_id', UUID(as_uuid=False), nullable=False, comment='No FK: history outlives the connection'),
        sa.Column('entity_types', JSONB, nullable=False),
        sa.Column('force', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('window_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='REQUESTED'),
        sa.Column('entity_results', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('REQUESTED', 'IN_PROGRESS', 'SUCCESS', 'PARTIAL_FAILURE', 'FAILED')",
            name='ck_sync_operation_status',
        ),
    )
    op.create_index('idx_sync_operation_connection_status', 'sync_operation', ['connection_id', 'status'])
    # At most one non-terminal operation per connection
    op.create_index(
        'uq_sync_operation_active_connection',
        'sync_operation',
        ['connection_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_SYNC_PREDICATE),
    )


def downgrade() -> None:
    """Drop the integration tables."""
    op.drop_index('uq_sync_operation_active_connection', table_name='sync_operation')
    op.drop_index('idx_sync_operation_connection_status', table_name='sync_operation')
    op.drop_table('sync_operation')

    op.drop_table('integration_credential')

    op.drop_index('idx_integration_connection_status', table_name='integration_connection')
    op.drop_index('idx_integration_connection_account', table_name='integration_connection')
    op.drop_index('idx_integration_connection_owner', table_name='integration_connection')
    op.drop_table('integration_connection')
