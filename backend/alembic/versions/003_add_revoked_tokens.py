"""add revoked_tokens table for the logout blacklist

Revision ID: 003
Revises: 002
Create Date: 2025-10-20 00:00:01.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '003'
down_revision = '002'
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == 'sqlite'

    timestamp_default = sa.text("(datetime('now'))") if is_sqlite else sa.text('now()')

    op.create_table(
        'revoked_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token_key', sa.String(length=100), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    # Checked on every authenticated request
    op.create_index('ix_revoked_tokens_token_key', 'revoked_tokens', ['token_key'], unique=True)
    # DELETE WHERE expires_at < now()
    op.create_index('ix_revoked_tokens_expires_at', 'revoked_tokens', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_revoked_tokens_expires_at', table_name='revoked_tokens')
    op.drop_index('ix_revoked_tokens_token_key', table_name='revoked_tokens')
    op.drop_table('revoked_tokens')
