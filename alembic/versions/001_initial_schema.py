"""Initial schema with waitlist signups and verification attempts

Revision ID: 001
Revises:
Create Date: 2025-02-15

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
    # Create waitlist_signups table
    op.create_table(
        'waitlist_signups',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=254), nullable=False),
        sa.Column('verification_code', sa.String(length=16), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('welcome_message_id', sa.Integer(), nullable=True),
        sa.Column('welcome_message_text', sa.Text(), nullable=True),
        sa.Column('calculated_number', sa.Integer(), nullable=True),
        sa.Column('browser_client', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('referral_source', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_waitlist_signups_email'), 'waitlist_signups', ['email'], unique=True)
    op.create_index(op.f('ix_waitlist_signups_is_verified'), 'waitlist_signups', ['is_verified'], unique=False)
    op.create_index(op.f('ix_waitlist_signups_created_at'), 'waitlist_signups', ['created_at'], unique=False)

    # Create verification_attempts table
    op.create_table(
        'verification_attempts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=254), nullable=False),
        sa.Column('attempted_code', sa.String(length=16), nullable=False),
        sa.Column('was_successful', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ip_address', sa.String(length=64), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_verification_attempts_timestamp'), 'verification_attempts', ['timestamp'], unique=False)
    op.create_index(
        'ix_verification_attempts_email_timestamp', 'verification_attempts', ['email', 'timestamp'], unique=False
    )


def downgrade() -> None:
    op.drop_index('ix_verification_attempts_email_timestamp', table_name='verification_attempts')
    op.drop_index(op.f('ix_verification_attempts_timestamp'), table_name='verification_attempts')
    op.drop_table('verification_attempts')
    op.drop_index(op.f('ix_waitlist_signups_created_at'), table_name='waitlist_signups')
    op.drop_index(op.f('ix_waitlist_signups_is_verified'), table_name='waitlist_signups')
    op.drop_index(op.f('ix_waitlist_signups_email'), table_name='waitlist_signups')
    op.drop_table('waitlist_signups')
