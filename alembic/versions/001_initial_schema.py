"""initial schema - users and webhook timers

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

OPEN_ROW_CLAUSE = sa.text("status IN ('active', 'pending_retry')")


def upgrade() -> None:
    # Create users table (requester metadata only)
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('phone_number', sa.String(20), nullable=False, unique=True, index=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )

    # Create webhook_timers table (status as VARCHAR, times as epoch ms)
    op.create_table(
        'webhook_timers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trip_id', sa.String(64), nullable=False, index=True),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('sender_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('deadline', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.BigInteger(), nullable=True),
        sa.Column('next_retry_at', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('idx_webhook_timers_status_deadline', 'webhook_timers', ['status', 'deadline'])
    op.create_index('idx_webhook_timers_status_next_retry', 'webhook_timers', ['status', 'next_retry_at'])
    # at most one open timer per trip
    op.create_index(
        'uq_webhook_timers_open_trip',
        'webhook_timers',
        ['trip_id'],
        unique=True,
        postgresql_where=OPEN_ROW_CLAUSE,
    )


def downgrade() -> None:
    op.drop_index('uq_webhook_timers_open_trip', table_name='webhook_timers')
    op.drop_index('idx_webhook_timers_status_next_retry', table_name='webhook_timers')
    op.drop_index('idx_webhook_timers_status_deadline', table_name='webhook_timers')
    op.drop_table('webhook_timers')
    op.drop_table('users')
