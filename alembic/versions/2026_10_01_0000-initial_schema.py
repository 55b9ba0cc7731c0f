"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit ledger, usage and reservation tables."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('account_id', sa.String(255), primary_key=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cycle_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_credit_accounts_cycle_start', 'credit_accounts', ['cycle_start'])

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(32), nullable=False),
        sa.Column('resulting_balance', sa.BigInteger(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('related_usage_id', sa.String(255), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "reason IN ('purchase', 'ai_usage', 'refund', 'monthly_reset')",
            name='ck_ledger_entry_reason',
        ),
        sa.UniqueConstraint('account_id', 'idempotency_key', name='uq_ledger_entry_idempotency'),
        sa.ForeignKeyConstraint(['account_id'], ['credit_accounts.account_id'], name='fk_ledger_entries_account', ondelete='RESTRICT'),
    )
    op.create_index('idx_ledger_entries_account_created', 'ledger_entries', ['account_id', 'created_at'])
    op.create_index('idx_ledger_entries_related_usage', 'ledger_entries', ['related_usage_id'], postgresql_where=sa.text('related_usage_id IS NOT NULL'))

    # ========================================================================
    # Create usage_records table
    # ========================================================================
    op.create_table(
        'usage_records',
        sa.Column('usage_id', sa.String(255), primary_key=True),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('input_units', sa.BigInteger(), nullable=False),
        sa.Column('output_units', sa.BigInteger(), nullable=False),
        sa.Column('computed_cost', sa.BigInteger(), nullable=False),
        sa.Column('estimated_cost', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shortfall', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('billing_route', sa.String(32), nullable=False),
        sa.Column('outcome', sa.String(32), nullable=False),
        sa.Column('related_ledger_entry_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("billing_route IN ('platform_credits', 'personal_key')", name='ck_usage_record_route'),
        sa.CheckConstraint(
            "billing_route = 'platform_credits' OR related_ledger_entry_id IS NULL",
            name='ck_usage_record_personal_key_no_ledger',
        ),
        sa.CheckConstraint('computed_cost >= 0', name='ck_usage_record_cost_non_negative'),
        sa.ForeignKeyConstraint(['related_ledger_entry_id'], ['ledger_entries.id'], name='fk_usage_records_ledger_entry', ondelete='RESTRICT'),
    )
    op.create_index('idx_usage_records_account_created', 'usage_records', ['account_id', 'created_at'])

    # ========================================================================
    # Create billing_reservations table
    # ========================================================================
    op.create_table(
        'billing_reservations',
        sa.Column('usage_id', sa.String(255), primary_key=True),
        sa.Column('account_id', sa.String(255), nullable=False),
        sa.Column('tier', sa.String(50), nullable=False),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('route', sa.String(32), nullable=False),
        sa.Column('estimated_units', sa.BigInteger(), nullable=False),
        sa.Column('estimated_cost', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('debit_entry_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'denied', 'reconciled', 'void')",
            name='ck_billing_reservation_status',
        ),
    )
    op.create_index('idx_billing_reservations_status_updated', 'billing_reservations', ['status', 'updated_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('billing_reservations')
    op.drop_table('usage_records')
    op.drop_table('ledger_entries')
    op.drop_table('credit_accounts')
