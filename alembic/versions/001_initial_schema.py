"""initial schema - retry queue, activity log, webhook configs

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Destination configuration (owned by the surrounding application)
    op.create_table(
        'webhook_configs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('user_id', sa.String(36), nullable=True, index=True),
        sa.Column('clinic_id', sa.String(36), nullable=True),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # Retry queue (status as VARCHAR guarded by a check constraint)
    op.create_table(
        'webhook_retry_queue',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_config_id', sa.String(36), nullable=True, index=True),
        sa.Column('webhook_name', sa.String(255), nullable=False),
        sa.Column('trigger_type', sa.String(100), nullable=False),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('request_payload', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claim_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('clinic_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint(
            "status IN ('pending', 'claimed', 'succeeded', 'abandoned')",
            name='ck_webhook_retry_queue_status',
        ),
        sa.CheckConstraint('max_retries >= 1', name='ck_webhook_retry_queue_max_retries_positive'),
        sa.CheckConstraint(
            'retry_count >= 0 AND retry_count <= max_retries',
            name='ck_webhook_retry_queue_retry_count_bounded',
        ),
    )
    # Hot path: selection of due tasks
    op.create_index(
        'ix_webhook_retry_queue_status_next_attempt',
        'webhook_retry_queue',
        ['status', 'next_attempt_at'],
    )
    op.create_index(
        'ix_webhook_retry_queue_user_created',
        'webhook_retry_queue',
        ['user_id', 'created_at'],
    )

    # Append-only activity log
    op.create_table(
        'webhook_activity_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('task_id', sa.String(36), nullable=False),
        sa.Column('webhook_config_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('clinic_id', sa.String(36), nullable=True),
        sa.Column('webhook_name', sa.String(255), nullable=False),
        sa.Column('trigger_type', sa.String(100), nullable=False),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('request_payload', sa.Text(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('abandoned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'ix_webhook_activity_log_task_attempt',
        'webhook_activity_log',
        ['task_id', 'attempt_number'],
    )
    op.create_index(
        'ix_webhook_activity_log_user_triggered',
        'webhook_activity_log',
        ['user_id', 'triggered_at'],
    )


def downgrade() -> None:
    op.drop_table('webhook_activity_log')
    op.drop_index('ix_webhook_retry_queue_user_created', table_name='webhook_retry_queue')
    op.drop_index('ix_webhook_retry_queue_status_next_attempt', table_name='webhook_retry_queue')
    op.drop_table('webhook_retry_queue')
    op.drop_table('webhook_configs')
