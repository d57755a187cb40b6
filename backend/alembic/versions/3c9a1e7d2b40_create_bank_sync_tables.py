"""create bank sync tables

Revision ID: 3c9a1e7d2b40
Revises:
Create Date: 2026-10-12 18:04:11.512301

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c9a1e7d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('bank_accounts',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('name', sa.String(), nullable=False),
    sa.Column('balance', sa.Numeric(precision=18, scale=2), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=False),
    sa.Column('account_type', sa.String(), nullable=False),
    sa.Column('gocardless_account_id', sa.String(), nullable=True),
    sa.Column('last_balance_sync_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_bank_accounts_gocardless_account_id'), 'bank_accounts', ['gocardless_account_id'], unique=True)
    op.create_table('gocardless_connections',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('requisition_id', sa.String(), nullable=False),
    sa.Column('agreement_id', sa.String(), nullable=True),
    sa.Column('institution_id', sa.String(), nullable=False),
    sa.Column('institution_name', sa.String(), nullable=True),
    sa.Column('institution_logo', sa.String(), nullable=True),
    sa.Column('status', sa.String(), nullable=False),
    sa.Column('connected_at', sa.DateTime(), nullable=False),
    sa.Column('expires_at', sa.DateTime(), nullable=False),
    sa.Column('access_valid_for_days', sa.Integer(), nullable=False),
    sa.Column('last_sync_at', sa.DateTime(), nullable=True),
    sa.Column('last_sync_error', sa.String(), nullable=True),
    sa.Column('linked_account_ids', sa.JSON(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_gocardless_connections_requisition_id'), 'gocardless_connections', ['requisition_id'], unique=True)
    op.create_table('transactions',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('bank_account_id', sa.String(length=36), nullable=False),
    sa.Column('external_id', sa.String(), nullable=True),
    sa.Column('booking_date', sa.Date(), nullable=False),
    sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=False),
    sa.Column('description', sa.String(), nullable=True),
    sa.Column('type', sa.String(), nullable=False),
    sa.Column('source', sa.String(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_transactions_bank_account_id'), 'transactions', ['bank_account_id'], unique=False)
    op.create_index(op.f('ix_transactions_booking_date'), 'transactions', ['booking_date'], unique=False)
    op.create_index(op.f('ix_transactions_external_id'), 'transactions', ['external_id'], unique=False)
    op.create_table('pending_duplicates',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('bank_account_id', sa.String(length=36), nullable=False),
    sa.Column('existing_transaction_id', sa.String(length=36), nullable=True),
    sa.Column('external_id', sa.String(), nullable=True),
    sa.Column('booking_date', sa.Date(), nullable=False),
    sa.Column('amount', sa.Numeric(precision=18, scale=2), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=False),
    sa.Column('description', sa.String(), nullable=True),
    sa.Column('raw_data', sa.JSON(), nullable=True),
    sa.Column('resolved', sa.Boolean(), nullable=False),
    sa.Column('resolution', sa.String(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('resolved_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['bank_account_id'], ['bank_accounts.id'], ),
    sa.ForeignKeyConstraint(['existing_transaction_id'], ['transactions.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_pending_duplicates_bank_account_id'), 'pending_duplicates', ['bank_account_id'], unique=False)
    op.create_index(op.f('ix_pending_duplicates_external_id'), 'pending_duplicates', ['external_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_pending_duplicates_external_id'), table_name='pending_duplicates')
    op.drop_index(op.f('ix_pending_duplicates_bank_account_id'), table_name='pending_duplicates')
    op.drop_table('pending_duplicates')
    op.drop_index(op.f('ix_transactions_external_id'), table_name='transactions')
    op.drop_index(op.f('ix_transactions_booking_date'), table_name='transactions')
    op.drop_index(op.f('ix_transactions_bank_account_id'), table_name='transactions')
    op.drop_table('transactions')
    op.drop_index(op.f('ix_gocardless_connections_requisition_id'), table_name='gocardless_connections')
    op.drop_table('gocardless_connections')
    op.drop_index(op.f('ix_bank_accounts_gocardless_account_id'), table_name='bank_accounts')
    op.drop_table('bank_accounts')
