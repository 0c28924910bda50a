"""Order sync tables: stores, orders, cursors, runs, run events, scheduler jobs

Revision ID: order_sync_20261001
Revises:
Create Date: 2026-10-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = 'order_sync_20261001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), 'postgresql')


def upgrade():
    op.create_table(
        'stores',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('identifier', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('base_url', sa.String(length=512), nullable=False),
        sa.Column('api_token', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('page_size', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('pagination_mode', sa.String(length=16), nullable=False, server_default='page'),
        sa.Column('delivery_credential', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_stores_identifier', 'stores', ['identifier'], unique=True)

    # orders: external ids are unique per store only
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('store_identifier', sa.String(length=32),
                  sa.ForeignKey('stores.identifier', ondelete='RESTRICT'), nullable=False),
        sa.Column('external_id', sa.String(length=64), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('external_status', sa.String(length=128), nullable=True),
        sa.Column('status_unknown', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('total', sa.Numeric(14, 2), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=64), nullable=True),
        sa.Column('customer_region', sa.String(length=128), nullable=True),
        sa.Column('customer_city', sa.String(length=128), nullable=True),
        sa.Column('items', JSONType, nullable=True),
        sa.Column('raw_payload', JSONType, nullable=True),
        sa.Column('ordered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivery_status_code', sa.Integer(), nullable=True),
        sa.Column('delivery_status', sa.String(length=128), nullable=True),
        sa.Column('tracking_number', sa.String(length=128), nullable=True),
        sa.Column('delivery_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('upstream_missing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('store_identifier', 'external_id', name='uq_orders_store_external_id'),
    )
    op.create_index('ix_orders_store_identifier', 'orders', ['store_identifier'])
    op.create_index('ix_orders_reference', 'orders', ['reference'])
    op.create_index('idx_orders_store_created', 'orders', ['store_identifier', 'created_at'])

    op.create_table(
        'sync_cursors',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('store_identifier', sa.String(length=32), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('last_external_id', sa.String(length=64), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('drift_flagged', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('drift_detail', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('store_identifier', 'job_type', name='uq_sync_cursors_store_job'),
    )
    op.create_index('ix_sync_cursors_store_identifier', 'sync_cursors', ['store_identifier'])
    op.create_index('ix_sync_cursors_job_type', 'sync_cursors', ['job_type'])

    op.create_table(
        'sync_runs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('store_identifier', sa.String(length=32), nullable=False),
        sa.Column('triggered_by', sa.String(length=32), nullable=False),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status_changed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_summary', JSONType, nullable=True),
        sa.Column('summary_json', JSONType, nullable=True),
    )
    op.create_index('ix_sync_runs_job_type', 'sync_runs', ['job_type'])
    op.create_index('ix_sync_runs_store_identifier', 'sync_runs', ['store_identifier'])
    op.create_index('ix_sync_runs_outcome', 'sync_runs', ['outcome'])
    op.create_index('idx_sync_runs_job_store_started', 'sync_runs', ['job_type', 'store_identifier', 'started_at'])

    op.create_table(
        'sync_run_events',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('run_id', sa.String(length=36), sa.ForeignKey('sync_runs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('store_identifier', sa.String(length=32), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('details_json', JSONType, nullable=True),
    )
    op.create_index('ix_sync_run_events_run_id', 'sync_run_events', ['run_id'])
    op.create_index('ix_sync_run_events_store_identifier', 'sync_run_events', ['store_identifier'])
    op.create_index('ix_sync_run_events_job_type', 'sync_run_events', ['job_type'])
    op.create_index('ix_sync_run_events_event_type', 'sync_run_events', ['event_type'])

    op.create_table(
        'scheduler_jobs',
        sa.Column('job_type', sa.String(length=32), primary_key=True),
        sa.Column('last_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.String(length=32), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('next_fire_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('runs_ok_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('runs_error_in_row', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table('scheduler_jobs')
    op.drop_index('ix_sync_run_events_event_type', table_name='sync_run_events')
    op.drop_index('ix_sync_run_events_job_type', table_name='sync_run_events')
    op.drop_index('ix_sync_run_events_store_identifier', table_name='sync_run_events')
    op.drop_index('ix_sync_run_events_run_id', table_name='sync_run_events')
    op.drop_table('sync_run_events')
    op.drop_index('idx_sync_runs_job_store_started', table_name='sync_runs')
    op.drop_index('ix_sync_runs_outcome', table_name='sync_runs')
    op.drop_index('ix_sync_runs_store_identifier', table_name='sync_runs')
    op.drop_index('ix_sync_runs_job_type', table_name='sync_runs')
    op.drop_table('sync_runs')
    op.drop_index('ix_sync_cursors_job_type', table_name='sync_cursors')
    op.drop_index('ix_sync_cursors_store_identifier', table_name='sync_cursors')
    op.drop_table('sync_cursors')
    op.drop_index('idx_orders_store_created', table_name='orders')
    op.drop_index('ix_orders_reference', table_name='orders')
    op.drop_index('ix_orders_store_identifier', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_stores_identifier', table_name='stores')
    op.drop_table('stores')
