"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create credentials table
    # ========================================================================
    op.create_table(
        'credentials',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('plan', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_usage', sa.Integer(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('issued_via', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('issued_to_origin', sa.String(128), nullable=True),

        # Constraints
        sa.CheckConstraint('expires_at > created_at', name='ck_credentials_expiry_after_creation'),
        sa.CheckConstraint('usage_count >= 0', name='ck_credentials_usage_non_negative'),
        sa.CheckConstraint(
            'max_usage IS NULL OR (max_usage > 0 AND usage_count <= max_usage)',
            name='ck_credentials_usage_within_limit',
        ),
        sa.CheckConstraint("plan IN ('trial', 'standard', 'premium', 'owner')", name='ck_credentials_plan'),
        sa.CheckConstraint("status IN ('active', 'revoked', 'expired')", name='ck_credentials_status'),
    )

    # Indexes for credentials
    op.create_index(
        'idx_credentials_issued_to_origin', 'credentials', ['issued_to_origin'],
        postgresql_where=sa.text('issued_to_origin IS NOT NULL'),
    )
    op.create_index('idx_credentials_status', 'credentials', ['status'])

    # ========================================================================
    # Create credential_origins table
    # ========================================================================
    op.create_table(
        'credential_origins',
        sa.Column('credential_id', sa.String(128), sa.ForeignKey('credentials.id'), primary_key=True),
        sa.Column('origin', sa.String(128), primary_key=True),
        sa.Column('bound_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create resources table
    # ========================================================================
    op.create_table(
        'resources',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('owner_credential_id', sa.String(128), sa.ForeignKey('credentials.id'), nullable=False),
        sa.Column('access_mode', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint("access_mode IN ('open', 'allow-deny-list')", name='ck_resources_access_mode'),
    )

    op.create_index('idx_resources_owner', 'resources', ['owner_credential_id'])

    # ========================================================================
    # Create resource_access_entries table
    # ========================================================================
    op.create_table(
        'resource_access_entries',
        sa.Column('resource_id', sa.String(64), sa.ForeignKey('resources.id'), primary_key=True),
        sa.Column('requester_id', sa.String(255), primary_key=True),
        sa.Column('list_kind', sa.String(10), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("list_kind IN ('allow', 'deny')", name='ck_access_entries_list_kind'),
    )

    # ========================================================================
    # Create origin_records table
    # ========================================================================
    op.create_table(
        'origin_records',
        sa.Column('origin', sa.String(128), primary_key=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('blocked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('block_reason', sa.String(255), nullable=True),
        sa.Column('manual', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('failure_count >= 0', name='ck_origin_records_failures_non_negative'),
    )

    op.create_index(
        'idx_origin_records_blocked_until', 'origin_records', ['blocked_until'],
        postgresql_where=sa.text('blocked_until IS NOT NULL'),
    )

    # ========================================================================
    # Create audit_log table
    # ========================================================================
    op.create_table(
        'audit_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('credential_id', sa.String(128), nullable=True),
        sa.Column('resource_id', sa.String(64), nullable=True),
        sa.Column('requester_id', sa.String(255), nullable=True),
        sa.Column('owner_credential_id', sa.String(128), nullable=True),
        sa.Column('verdict', sa.String(20), nullable=True),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('origin', sa.String(128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # Indexes for audit_log
    op.create_index('idx_audit_log_owner_created', 'audit_log', ['owner_credential_id', 'created_at'])
    op.create_index('idx_audit_log_resource', 'audit_log', ['resource_id'])
    op.create_index('idx_audit_log_requester', 'audit_log', ['requester_id'])
    op.create_index('idx_audit_log_created_at', 'audit_log', ['created_at'], postgresql_using='brin')


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('audit_log')
    op.drop_table('origin_records')
    op.drop_table('resource_access_entries')
    op.drop_table('resources')
    op.drop_table('credential_origins')
    op.drop_table('credentials')
