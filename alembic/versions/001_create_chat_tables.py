"""
Create chat delivery tables

Revision ID: 001_create_chat_tables
Revises:
Create Date: 2026-10-17 09:00:00.000000

Changes:
- bots and bot_access (tenant entitlements)
- chat_sessions with unique external_id for idempotent creation
- messages with request_id correlating assistant placeholders, at most one
  assistant row per request_id
"""
from alembic import op
import sqlalchemy as sa
import logging

# Revision identifiers
revision = '001_create_chat_tables'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)


def upgrade():
    """Create the bots, bot_access, chat_sessions and messages tables."""
    logger.info("Creating chat delivery tables")

    op.create_table(
        'bots',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('webhook_url', sa.String(1000), nullable=True),
        sa.Column('webhook_headers', sa.JSON(), nullable=True),
        sa.Column('timeout_seconds', sa.Float(), nullable=True),
    )

    op.create_table(
        'bot_access',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('bot_id', sa.String(36), nullable=False),
        sa.UniqueConstraint('tenant_id', 'bot_id', name='uq_bot_access_tenant_bot'),
    )
    op.create_index('ix_bot_access_tenant_id', 'bot_access', ['tenant_id'])
    op.create_index('ix_bot_access_bot_id', 'bot_access', ['bot_id'])

    op.create_table(
        'chat_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('bot_id', sa.String(36), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True, unique=True),
        sa.Column('title', sa.String(100), nullable=False, server_default='New Chat'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_chat_sessions_tenant_id', 'chat_sessions', ['tenant_id'])
    op.create_index('ix_chat_sessions_user_id', 'chat_sessions', ['user_id'])
    op.create_index('ix_chat_sessions_bot_id', 'chat_sessions', ['bot_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('chat_sessions.id'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='delivered'),
        sa.Column('request_id', sa.String(100), nullable=True),
        sa.Column('error_text', sa.Text(), nullable=True),
        sa.Column('latency_ms', sa.Float(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_messages_session_id', 'messages', ['session_id'])
    op.create_index('ix_messages_request_id', 'messages', ['request_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    op.create_index(
        'uq_messages_assistant_request_id',
        'messages',
        ['request_id'],
        unique=True,
        postgresql_where=sa.text("role = 'assistant'"),
        sqlite_where=sa.text("role = 'assistant'")
    )

    logger.info("Chat delivery tables created")


def downgrade():
    """Drop the chat delivery tables."""
    op.drop_table('messages')
    op.drop_table('chat_sessions')
    op.drop_table('bot_access')
    op.drop_table('bots')
