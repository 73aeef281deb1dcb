"""Create ga4_events and ga4_job_leases tables

Revision ID: 20261001000000
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261001000000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'ga4_events',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('event_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('monitor_status', sa.String(length=20), nullable=False),
        sa.Column('queue_status', sa.String(length=20), nullable=True),
        sa.Column('original_payload', sa.Text(), nullable=True),
        sa.Column('original_headers', sa.Text(), nullable=True),
        sa.Column('final_payload', sa.Text(), nullable=True),
        sa.Column('final_headers', sa.Text(), nullable=True),
        sa.Column('transmission_method', sa.String(length=20), nullable=True),
        sa.Column('was_originally_encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('final_payload_encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('consent_given', sa.Boolean(), nullable=True),
        sa.Column('batch_size', sa.Integer(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "monitor_status in ('allowed','denied','bot_detected','error')",
            name='ck_ga4_events_monitor_status',
        ),
        sa.CheckConstraint(
            "queue_status is null or queue_status in ('pending','processing','completed','failed')",
            name='ck_ga4_events_queue_status',
        ),
        sa.CheckConstraint(
            "(monitor_status = 'allowed' and queue_status is not null) "
            "or (monitor_status <> 'allowed' and queue_status is null)",
            name='ck_ga4_events_queue_admitted',
        ),
    )
    op.create_index('ix_ga4_events_event_name', 'ga4_events', ['event_name'])
    op.create_index('ix_ga4_events_monitor_status', 'ga4_events', ['monitor_status'])
    op.create_index('ix_ga4_events_ip_address', 'ga4_events', ['ip_address'])
    op.create_index('ix_ga4_events_created_at', 'ga4_events', ['created_at'])
    op.create_index('ix_ga4_events_queue_created', 'ga4_events', ['queue_status', 'created_at'])

    op.create_table(
        'ga4_job_leases',
        sa.Column('name', sa.String(length=100), primary_key=True),
        sa.Column('holder', sa.String(length=100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('ga4_job_leases')
    op.drop_index('ix_ga4_events_queue_created', table_name='ga4_events')
    op.drop_index('ix_ga4_events_created_at', table_name='ga4_events')
    op.drop_index('ix_ga4_events_ip_address', table_name='ga4_events')
    op.drop_index('ix_ga4_events_monitor_status', table_name='ga4_events')
    op.drop_index('ix_ga4_events_event_name', table_name='ga4_events')
    op.drop_table('ga4_events')
