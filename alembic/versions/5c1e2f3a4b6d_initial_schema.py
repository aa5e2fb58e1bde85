"""initial schema

Revision ID: 5c1e2f3a4b6d
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e2f3a4b6d'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, repositories, snapshots, sync jobs and bulk merges."""
    op.create_table('provider_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=100), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('instance_url', sa.String(length=500), nullable=False),
        sa.Column('label', sa.String(length=100), nullable=False),
        sa.Column('remote_user_id', sa.String(length=100), nullable=False),
        sa.Column('username', sa.String(length=200), nullable=False),
        sa.Column('encrypted_token', sa.LargeBinary(), nullable=False),
        sa.Column('auth_username', sa.String(length=200), nullable=True),
        sa.Column('scopes', sa.JSON(), nullable=False),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_validated_at', sa.DateTime(), nullable=True),
        sa.Column('validation_status', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'provider', 'instance_url', 'label', name='uq_account_label'),
        sa.UniqueConstraint('owner_id', 'provider', 'instance_url', 'remote_user_id', name='uq_account_remote_user'),
    )
    op.create_index('ix_provider_accounts_owner_id', 'provider_accounts', ['owner_id'])
    # At most one default account per (owner, provider, instance)
    op.create_index(
        'uq_account_default',
        'provider_accounts',
        ['owner_id', 'provider', 'instance_url'],
        unique=True,
        sqlite_where=sa.text('is_default = 1'),
        postgresql_where=sa.text('is_default'),
    )

    op.create_table('repositories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('owner_id', sa.String(length=100), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('instance_url', sa.String(length=500), nullable=False),
        sa.Column('owner', sa.String(length=200), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('full_name', sa.String(length=400), nullable=False),
        sa.Column('remote_id', sa.String(length=100), nullable=True),
        sa.Column('default_branch', sa.String(length=200), nullable=True),
        sa.Column('url', sa.String(length=500), nullable=True),
        sa.Column('is_private', sa.Boolean(), nullable=False),
        sa.Column('is_archived', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['provider_accounts.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'provider', 'instance_url', 'full_name', name='uq_repository_full_name'),
    )
    op.create_index('ix_repositories_account_id', 'repositories', ['account_id'])
    op.create_index('ix_repositories_owner_id', 'repositories', ['owner_id'])

    op.create_table('pull_request_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=False),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('author', sa.String(length=200), nullable=False),
        sa.Column('source_branch', sa.String(length=300), nullable=False),
        sa.Column('target_branch', sa.String(length=300), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('is_draft', sa.Boolean(), nullable=False),
        sa.Column('has_conflicts', sa.Boolean(), nullable=False),
        sa.Column('head_sha', sa.String(length=64), nullable=True),
        sa.Column('url', sa.String(length=500), nullable=True),
        sa.Column('requested_reviewers', sa.JSON(), nullable=False),
        sa.Column('ci_checks', sa.JSON(), nullable=True),
        sa.Column('reviews', sa.JSON(), nullable=True),
        sa.Column('ampel_status', sa.String(length=32), nullable=False),
        sa.Column('blockers', sa.JSON(), nullable=False),
        sa.Column('pr_updated_at', sa.DateTime(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('repository_id', 'number', name='uq_snapshot_repo_number'),
    )

    op.create_table('sync_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('repository_id', sa.Integer(), nullable=True),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('dedup_key', sa.String(length=64), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column('backoff_until', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['account_id'], ['provider_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedup_key'),
    )
    op.create_index('ix_sync_jobs_status', 'sync_jobs', ['status'])
    op.create_index('ix_sync_jobs_repository_id', 'sync_jobs', ['repository_id'])
    op.create_index('ix_sync_jobs_account_id', 'sync_jobs', ['account_id'])

    op.create_table('bulk_merge_operations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=100), nullable=True),
        sa.Column('strategy', sa.String(length=32), nullable=False),
        sa.Column('delete_branch', sa.Boolean(), nullable=False),
        sa.Column('force', sa.Boolean(), nullable=False),
        sa.Column('delay_seconds', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('bulk_merge_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('snapshot_id', sa.Integer(), nullable=True),
        sa.Column('repository_id', sa.Integer(), nullable=True),
        sa.Column('pr_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('merge_sha', sa.String(length=64), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['operation_id'], ['bulk_merge_operations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['snapshot_id'], ['pull_request_snapshots.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['repository_id'], ['repositories.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation_id', 'position', name='uq_bulk_item_position'),
    )
    op.create_index('ix_bulk_merge_items_operation_id', 'bulk_merge_items', ['operation_id'])


def downgrade() -> None:
    """Drop every table."""
    op.drop_index('ix_bulk_merge_items_operation_id', table_name='bulk_merge_items')
    op.drop_table('bulk_merge_items')
    op.drop_table('bulk_merge_operations')
    op.drop_index('ix_sync_jobs_account_id', table_name='sync_jobs')
    op.drop_index('ix_sync_jobs_repository_id', table_name='sync_jobs')
    op.drop_index('ix_sync_jobs_status', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_table('pull_request_snapshots')
    op.drop_index('ix_repositories_owner_id', table_name='repositories')
    op.drop_index('ix_repositories_account_id', table_name='repositories')
    op.drop_table('repositories')
    op.drop_index('uq_account_default', table_name='provider_accounts')
    op.drop_index('ix_provider_accounts_owner_id', table_name='provider_accounts')
    op.drop_table('provider_accounts')
