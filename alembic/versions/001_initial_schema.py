"""Initial schema: tweet_actions queue and action_event_log dedup ledger.

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create tweet_actions table
    op.create_table(
        'tweet_actions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('source_event_id', sa.String(128), nullable=False),
        sa.Column('trigger_type', sa.String(32), nullable=False),
        sa.Column('wallet_address', sa.String(64), nullable=False),
        sa.Column('wallet_profile', sa.JSON(), nullable=True),
        sa.Column('trade_event', sa.JSON(), nullable=True),
        sa.Column('market_url', sa.String(512), nullable=False, server_default=''),
        sa.Column('profile_url', sa.String(512), nullable=False, server_default=''),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('draft_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('reviewed_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('final_text', sa.Text(), nullable=False, server_default=''),
        sa.Column('screenshot_path', sa.String(512), nullable=False, server_default=''),
        sa.Column('posted_id', sa.String(64), nullable=False, server_default=''),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_tweet_actions_account_status',
        'tweet_actions',
        ['account_id', 'status', 'created_at'],
        unique=False,
    )
    op.create_index('ix_tweet_actions_status_retry', 'tweet_actions', ['status', 'next_retry_at'], unique=False)

    # Create action_event_log table (one action per account and source event)
    op.create_table(
        'action_event_log',
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('source_event_id', sa.String(128), nullable=False),
        sa.Column('action_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('account_id', 'source_event_id', name='pk_action_event_log'),
    )


def downgrade() -> None:
    op.drop_table('action_event_log')
    op.drop_index('ix_tweet_actions_status_retry', table_name='tweet_actions')
    op.drop_index('ix_tweet_actions_account_status', table_name='tweet_actions')
    op.drop_table('tweet_actions')
