"""create messaging tables

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a7c1e2d3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'user_role': ('SALON', 'CLIENT'),
    'conversation_status': ('ACTIVE', 'ARCHIVED'),
    'message_type': ('TEXT', 'IMAGE', 'SYSTEM'),
    'email_frequency': ('IMMEDIATE', 'HOURLY', 'DAILY', 'NEVER'),
    'email_notification_status': ('PENDING', 'SENT', 'FAILED'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for name in ENUMS:
        _enum(name).create(op.get_bind(), checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', _enum('user_role'), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('salon_name', sa.String(150), nullable=True),
        sa.Column('image', sa.String(500), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'appointments',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('salon_id', sa.UUID(), nullable=False),
        sa.Column('client_user_id', sa.UUID(), nullable=True),
        sa.Column('scheduled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['salon_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_user_id'], ['users.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_appointments_salon_id', 'appointments', ['salon_id'])
    op.create_index('ix_appointments_client_user_id', 'appointments', ['client_user_id'])

    op.create_table(
        'conversations',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('salon_id', sa.UUID(), nullable=False),
        sa.Column('client_user_id', sa.UUID(), nullable=False),
        sa.Column('appointment_id', sa.UUID(), nullable=True),
        sa.Column('subject', sa.String(200), nullable=True),
        sa.Column('status', _enum('conversation_status'), nullable=False,
                  server_default='ACTIVE'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_message_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('appointment_id'),
        sa.ForeignKeyConstraint(['salon_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['client_user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='SET NULL'),
        sa.CheckConstraint('salon_id <> client_user_id', name='check_conversation_two_parties'),
    )
    op.create_index('ix_conversations_salon_id', 'conversations', ['salon_id'])
    op.create_index('ix_conversations_client_user_id', 'conversations', ['client_user_id'])
    op.create_index('ix_conversations_status', 'conversations', ['status'])
    op.create_index('idx_conversations_salon_last_message', 'conversations',
                    ['salon_id', 'last_message_at'])
    op.create_index('idx_conversations_client_last_message', 'conversations',
                    ['client_user_id', 'last_message_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('sender_id', sa.UUID(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('type', _enum('message_type'), nullable=False, server_default='TEXT'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('read_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('archived_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id'], ondelete='CASCADE'),
        sa.CheckConstraint('length(content) > 0', name='check_message_content_not_empty'),
    )
    op.create_index('ix_messages_sender_id', 'messages', ['sender_id'])
    op.create_index('idx_messages_conversation_created', 'messages',
                    ['conversation_id', 'created_at'])
    op.create_index('idx_messages_conversation_unread', 'messages',
                    ['conversation_id', 'is_read'])
    op.create_index('idx_messages_retention', 'messages', ['archived_at', 'created_at'])

    op.create_table(
        'message_attachments',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('message_id', sa.UUID(), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_url', sa.String(1000), nullable=False),
        sa.Column('file_type', sa.String(50), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('storage_key', sa.String(500), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='CASCADE'),
        sa.CheckConstraint('file_size > 0 AND file_size <= 10485760', name='check_attachment_size'),
    )
    op.create_index('ix_message_attachments_message_id', 'message_attachments', ['message_id'])

    op.create_table(
        'unread_counters',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_unread_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('conversation_id', 'user_id', name='uq_unread_counter_conversation_user'),
        sa.CheckConstraint('unread_count >= 0', name='check_unread_count_not_negative'),
    )
    op.create_index('ix_unread_counters_user_id', 'unread_counters', ['user_id'])

    op.create_table(
        'notification_preferences',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('email_notifications_enabled', sa.Boolean(), nullable=False,
                  server_default='true'),
        sa.Column('email_frequency', _enum('email_frequency'), nullable=False,
                  server_default='IMMEDIATE'),
        sa.Column('muted_conversations', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )

    op.create_table(
        'email_notification_queue',
        sa.Column('id', sa.UUID(), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('conversation_id', sa.UUID(), nullable=False),
        sa.Column('recipient_user_id', sa.UUID(), nullable=False),
        sa.Column('status', _enum('email_notification_status'), nullable=False,
                  server_default='PENDING'),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['recipient_user_id'], ['users.id'], ondelete='CASCADE'),
        sa.CheckConstraint('message_count >= 1', name='check_email_queue_message_count'),
    )
    # One open digest per (conversation, recipient)
    op.create_index(
        'uq_email_queue_pending_pair',
        'email_notification_queue',
        ['conversation_id', 'recipient_user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index('idx_email_queue_status_created', 'email_notification_queue',
                    ['status', 'created_at'])


def downgrade() -> None:
    op.drop_table('email_notification_queue')
    op.drop_table('notification_preferences')
    op.drop_table('unread_counters')
    op.drop_table('message_attachments')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('appointments')
    op.drop_table('users')

    for name in reversed(list(ENUMS)):
        _enum(name).drop(op.get_bind(), checkfirst=True)
