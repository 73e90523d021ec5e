"""initial schema

Revision ID: 001
Revises:
Create Date: 2025-10-13 16:25:44.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


NOTIFY_FUNCTION = """
CREATE OR REPLACE FUNCTION notify_messenger_messages() RETURNS TRIGGER AS $$
    BEGIN
        PERFORM pg_notify('messenger_messages', NEW.queue_name::text);
        RETURN NEW;
    END;
$$ LANGUAGE plpgsql;
"""

NOTIFY_TRIGGER = """
CREATE TRIGGER notify_trigger AFTER INSERT OR UPDATE ON messenger_messages
FOR EACH ROW EXECUTE PROCEDURE notify_messenger_messages();
"""


def upgrade() -> None:
    # Detect database type
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == 'sqlite'

    # SQLite only autoincrements INTEGER PRIMARY KEY
    id_type = sa.Integer() if is_sqlite else sa.BigInteger()

    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=180), nullable=False),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('password', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1' if is_sqlite else 'true'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default='0' if is_sqlite else 'false'),
        sa.Column('verification_token', sa.String(length=100), nullable=True),
        sa.Column('email_verified_at', sa.DateTime(), nullable=True),
        sa.Column('reset_password_token', sa.String(length=100), nullable=True),
        sa.Column('reset_password_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.Column('last_login_ip', sa.String(length=45), nullable=True),
        sa.Column('login_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('ix_users_is_active', 'users', ['is_active'])
    op.create_index('ix_users_verification_token', 'users', ['verification_token'])
    op.create_index('ix_users_reset_password_token', 'users', ['reset_password_token'])

    # Create messenger_messages table (the outbox)
    op.create_table(
        'messenger_messages',
        sa.Column('id', id_type, autoincrement=True, nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('headers', sa.Text(), nullable=False),
        sa.Column('queue_name', sa.String(length=190), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('available_at', sa.DateTime(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_messenger_messages_queue_name', 'messenger_messages', ['queue_name'])
    op.create_index('ix_messenger_messages_available_at', 'messenger_messages', ['available_at'])
    op.create_index('ix_messenger_messages_delivered_at', 'messenger_messages', ['delivered_at'])

    # Wake LISTEN-ing consumers whenever a row is written
    if not is_sqlite:
        op.execute(NOTIFY_FUNCTION)
        op.execute('DROP TRIGGER IF EXISTS notify_trigger ON messenger_messages;')
        op.execute(NOTIFY_TRIGGER)


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != 'sqlite':
        op.execute('DROP TRIGGER IF EXISTS notify_trigger ON messenger_messages;')
        op.execute('DROP FUNCTION IF EXISTS notify_messenger_messages();')
    op.drop_table('messenger_messages')
    op.drop_table('users')
