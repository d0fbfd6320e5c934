"""initial schema: tenants, sync bookkeeping, cached data and derived analytics

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the full schema."""

    # Tenants and their encrypted secrets
    op.create_table(
        'tenant_secrets',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('secret_encrypted', sa.LargeBinary(), nullable=False),
        sa.Column('rotated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'tenants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('directory_id', sa.String(length=36), nullable=False),
        sa.Column('application_id', sa.String(length=36), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), nullable=False),
        sa.Column('secret_ref', sa.UUID(), nullable=False),
        sa.Column('log_analytics_workspace_id', sa.String(length=36), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('needs_revalidation', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_validated_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['secret_ref'], ['tenant_secrets.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tenants_id'), 'tenants', ['id'], unique=False)
    op.create_index(op.f('ix_tenants_subscription_id'), 'tenants', ['subscription_id'], unique=False)

    # Sync scheduling and history
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('sync_kind', sa.String(length=20), nullable=False),
        sa.Column('interval_minutes', sa.Integer(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_enqueued_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'sync_kind', name='uq_sync_jobs_tenant_kind')
    )
    op.create_index(op.f('ix_sync_jobs_tenant_id'), 'sync_jobs', ['tenant_id'], unique=False)

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('sync_kind', sa.String(length=20), nullable=False),
        sa.Column('trigger', sa.String(length=20), nullable=False, server_default='manual'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('warning_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_kind', sa.String(length=20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', postgresql.JSON(astext_type=sa.Text()), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default='false'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_logs_id'), 'sync_logs', ['id'], unique=False)
    op.create_index(op.f('ix_sync_logs_tenant_id'), 'sync_logs', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_sync_logs_status'), 'sync_logs', ['status'], unique=False)
    op.create_index(
        'ix_sync_logs_tenant_kind_started', 'sync_logs', ['tenant_id', 'sync_kind', 'started_at'], unique=False
    )
    # At most one running row per (tenant, kind)
    op.create_index(
        'uq_sync_logs_one_running',
        'sync_logs',
        ['tenant_id', 'sync_kind'],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )

    # Cached inventory
    op.create_table(
        'cached_resources',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('external_id', sa.String(length=1024), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=255), nullable=False),
        sa.Column('resource_group', sa.String(length=255), nullable=False),
        sa.Column('location', sa.String(length=100), nullable=True),
        sa.Column('tags', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('properties', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index(op.f('ix_cached_resources_id'), 'cached_resources', ['id'], unique=False)
    op.create_index(op.f('ix_cached_resources_tenant_id'), 'cached_resources', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_cached_resources_type'), 'cached_resources', ['type'], unique=False)

    op.create_table(
        'cached_resource_groups',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('location', sa.String(length=100), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_resource_groups_tenant_name')
    )
    op.create_index(op.f('ix_cached_resource_groups_tenant_id'), 'cached_resource_groups', ['tenant_id'], unique=False)

    # Daily cost
    op.create_table(
        'cost_records',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.String(length=1024), nullable=True),
        sa.Column('resource_key', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('resource_group', sa.String(length=255), nullable=True),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('meter_category', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('meter_subcategory', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('meter_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('cost', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('usage_quantity', sa.Float(), nullable=False, server_default='0.0'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'tenant_id',
            'resource_key',
            'usage_date',
            'meter_category',
            'meter_subcategory',
            'meter_name',
            name='uq_cost_records_natural_key',
        )
    )
    op.create_index(op.f('ix_cost_records_tenant_id'), 'cost_records', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_cost_records_usage_date'), 'cost_records', ['usage_date'], unique=False)

    # Platform metrics
    op.create_table(
        'metric_samples',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('metric_name', sa.String(length=255), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('aggregation_type', sa.String(length=20), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(length=50), nullable=True),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'resource_id', 'metric_name', 'timestamp', 'aggregation_type', name='uq_metric_samples_natural_key'
        )
    )
    op.create_index(op.f('ix_metric_samples_resource_id'), 'metric_samples', ['resource_id'], unique=False)
    op.create_index(op.f('ix_metric_samples_timestamp'), 'metric_samples', ['timestamp'], unique=False)

    # SQL insights
    op.create_table(
        'sql_performance_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('cpu_percent', sa.Float(), nullable=True),
        sa.Column('dtu_percent', sa.Float(), nullable=True),
        sa.Column('storage_percent', sa.Float(), nullable=True),
        sa.Column('deadlock_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('blocked_count', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id', 'timestamp', name='uq_sql_perf_resource_ts')
    )
    op.create_index(op.f('ix_sql_performance_stats_resource_id'), 'sql_performance_stats', ['resource_id'], unique=False)

    op.create_table(
        'wait_stats',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('wait_type', sa.String(length=120), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.Column('wait_time_ms', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('wait_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_wait_time_ms', sa.Float(), nullable=False, server_default='0.0'),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id', 'wait_type', 'captured_at', name='uq_wait_stats_natural_key')
    )
    op.create_index(op.f('ix_wait_stats_resource_id'), 'wait_stats', ['resource_id'], unique=False)

    op.create_table(
        'replication_links',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('partner_server', sa.String(length=255), nullable=False),
        sa.Column('partner_database', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=50), nullable=True),
        sa.Column('state', sa.String(length=50), nullable=False),
        sa.Column('lag_seconds', sa.Float(), nullable=True),
        sa.Column('last_replicated_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id', 'partner_server', name='uq_replication_links_partner')
    )
    op.create_index(op.f('ix_replication_links_resource_id'), 'replication_links', ['resource_id'], unique=False)

    op.create_table(
        'replication_lag_samples',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('partner_server', sa.String(length=255), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.Column('state', sa.String(length=50), nullable=False),
        sa.Column('lag_seconds', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id', 'partner_server', 'captured_at', name='uq_replication_lag_samples_key')
    )
    op.create_index(
        op.f('ix_replication_lag_samples_resource_id'), 'replication_lag_samples', ['resource_id'], unique=False
    )

    op.create_table(
        'advisor_recommendations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('recommendation_id', sa.String(length=255), nullable=False),
        sa.Column('resource_id', sa.String(length=1024), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('impact', sa.String(length=20), nullable=True),
        sa.Column('problem', sa.Text(), nullable=True),
        sa.Column('solution', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'recommendation_id', name='uq_advisor_recommendations_key')
    )
    op.create_index(
        op.f('ix_advisor_recommendations_tenant_id'), 'advisor_recommendations', ['tenant_id'], unique=False
    )
    op.create_index(
        op.f('ix_advisor_recommendations_resource_id'), 'advisor_recommendations', ['resource_id'], unique=False
    )

    # Derived analytics
    op.create_table(
        'derived_scores',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('score_kind', sa.String(length=20), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('grade', sa.String(length=1), nullable=True),
        sa.Column('breakdown', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id', 'score_kind', name='uq_derived_scores_kind')
    )
    op.create_index(op.f('ix_derived_scores_resource_id'), 'derived_scores', ['resource_id'], unique=False)
    op.create_index(op.f('ix_derived_scores_tenant_id'), 'derived_scores', ['tenant_id'], unique=False)

    op.create_table(
        'cost_anomalies',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.String(length=1024), nullable=True),
        sa.Column('resource_key', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('anomaly_date', sa.Date(), nullable=False),
        sa.Column('anomaly_type', sa.String(length=10), nullable=False),
        sa.Column('actual_cost', sa.Float(), nullable=False),
        sa.Column('expected_cost', sa.Float(), nullable=False),
        sa.Column('deviation_percent', sa.Float(), nullable=False),
        sa.Column('severity', sa.String(length=10), nullable=False),
        sa.Column('is_acknowledged', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('acknowledged_by', sa.String(length=255), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'resource_key', 'anomaly_date', name='uq_cost_anomalies_key')
    )
    op.create_index(op.f('ix_cost_anomalies_id'), 'cost_anomalies', ['id'], unique=False)
    op.create_index(op.f('ix_cost_anomalies_tenant_id'), 'cost_anomalies', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_cost_anomalies_anomaly_date'), 'cost_anomalies', ['anomaly_date'], unique=False)
    op.create_index(op.f('ix_cost_anomalies_severity'), 'cost_anomalies', ['severity'], unique=False)

    op.create_table(
        'cost_anomaly_watermarks',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('resource_key', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('last_scored_date', sa.Date(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'resource_key', name='uq_cost_anomaly_watermarks_key')
    )

    op.create_table(
        'idle_resource_flags',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('idle_reason', sa.Text(), nullable=False),
        sa.Column('idle_days', sa.Integer(), nullable=False),
        sa.Column('monthly_cost_estimate', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('metrics_summary', postgresql.JSON(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='open'),
        sa.Column('ignored_reason', sa.Text(), nullable=True),
        sa.Column('status_changed_by', sa.String(length=255), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['resource_id'], ['cached_resources.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('resource_id')
    )
    op.create_index(op.f('ix_idle_resource_flags_id'), 'idle_resource_flags', ['id'], unique=False)
    op.create_index(op.f('ix_idle_resource_flags_tenant_id'), 'idle_resource_flags', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_idle_resource_flags_status'), 'idle_resource_flags', ['status'], unique=False)


def downgrade() -> None:
    """Drop the full schema."""
    op.drop_table('idle_resource_flags')
    op.drop_table('cost_anomaly_watermarks')
    op.drop_table('cost_anomalies')
    op.drop_table('derived_scores')
    op.drop_table('advisor_recommendations')
    op.drop_table('replication_lag_samples')
    op.drop_table('replication_links')
    op.drop_table('wait_stats')
    op.drop_table('sql_performance_stats')
    op.drop_table('metric_samples')
    op.drop_table('cost_records')
    op.drop_table('cached_resource_groups')
    op.drop_table('cached_resources')
    op.drop_index('uq_sync_logs_one_running', table_name='sync_logs')
    op.drop_table('sync_logs')
    op.drop_table('sync_jobs')
    op.drop_table('tenants')
    op.drop_table('tenant_secrets')
