"""001 Initial schema - bookings, action locks, retry queue, admin action log

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

All timestamps are epoch seconds. bookings.updated_at is the optimistic
version stamp; action_locks is unique per (resource_type, resource_id, action).
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('start_date', sa.String(10), nullable=True),
        sa.Column('proposed_date', sa.String(10), nullable=True),
        sa.Column('response_token', sa.String(64), nullable=True, unique=True),
        sa.Column('token_expires_at', sa.Integer(), nullable=True),
        sa.Column('deposit_evidence_url', sa.Text(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
    )
    op.create_index('ix_booking_status', 'bookings', ['status'])
    op.create_index('ix_booking_deposit_evidence', 'bookings', ['deposit_evidence_url'])

    op.create_table(
        'booking_status_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('old_status', sa.String(30), nullable=True),
        sa.Column('new_status', sa.String(30), nullable=False),
        sa.Column('changed_by', sa.String(255), nullable=False),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
    )
    op.create_index('ix_booking_status_history_booking_id', 'booking_status_history', ['booking_id'])

    op.create_table(
        'action_locks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('resource_type', sa.String(20), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('admin_email', sa.String(255), nullable=False),
        sa.Column('admin_name', sa.String(255), nullable=True),
        sa.Column('locked_at', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.Integer(), nullable=False),
        sa.UniqueConstraint('resource_type', 'resource_id', 'action', name='uq_action_lock_resource_action'),
    )
    op.create_index('ix_action_lock_expires_at', 'action_locks', ['expires_at'])

    op.create_table(
        'job_queue',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('job_type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('scheduled_at', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.Integer(), nullable=True),
    )
    op.create_index('ix_job_queue_status_scheduled', 'job_queue', ['status', 'scheduled_at'])
    op.create_index('ix_job_queue_priority', 'job_queue', ['priority', 'created_at'])

    op.create_table(
        'admin_action_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource_type', sa.String(20), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('admin_email', sa.String(255), nullable=False),
        sa.Column('admin_name', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False),
    )
    op.create_index('ix_admin_action_logs_action', 'admin_action_logs', ['action'])
    op.create_index('ix_admin_action_logs_resource_id', 'admin_action_logs', ['resource_id'])
    op.create_index('ix_admin_action_logs_created_at', 'admin_action_logs', ['created_at'])


def downgrade():
    op.drop_table('admin_action_logs')
    op.drop_table('job_queue')
    op.drop_table('action_locks')
    op.drop_table('booking_status_history')
    op.drop_table('bookings')
