"""Create invoices and transactions ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-19

WHAT: Creates the two ledger tables, their status enums and the
constraints that keep them consistent.

WHY: Double settlement is prevented in the database, not in application
code:
1. transactions.external_payment_id is unique (one row per processor payment)
2. transactions.invoice_id is unique (one settlement per invoice)
3. invoices.total_amount must equal amount + tax_amount

HOW: Enum types are created explicitly so the downgrade can drop them.
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
    """Create invoices and transactions."""
    op.execute("CREATE TYPE invoicestatus AS ENUM ('pending', 'paid', 'refunded')")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('succeeded', 'failed', 'refunded')")

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column(
            'invoice_number',
            sa.String(length=50),
            nullable=False,
            comment='Unique invoice number (e.g., INV-2026-0001)'
        ),
        sa.Column(
            'status',
            sa.Enum('pending', 'paid', 'refunded', name='invoicestatus', create_type=False),
            nullable=False,
            server_default='pending',
            comment='Current invoice status'
        ),
        sa.Column('payer_id', sa.String(64), nullable=False, comment='Paying user reference'),
        sa.Column('payer_email', sa.String(255), nullable=False),
        sa.Column('payer_name', sa.String(255), nullable=True),
        sa.Column(
            'billable_item_ref',
            sa.String(64),
            nullable=True,
            comment='Billed item reference (e.g. enrollment id)'
        ),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column(
            'issue_date',
            sa.Date(),
            nullable=False,
            server_default=sa.text('CURRENT_DATE')
        ),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True, comment='When the invoice was settled'),
        sa.Column(
            'payment_reference',
            sa.String(255),
            nullable=True,
            comment='Latest processor payment id issued for this invoice'
        ),
        sa.Column(
            'created_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.CheckConstraint('amount > 0', name='ck_invoices_amount_positive'),
        sa.CheckConstraint('tax_amount >= 0', name='ck_invoices_tax_non_negative'),
        sa.CheckConstraint('total_amount = amount + tax_amount', name='ck_invoices_total_matches'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_invoices_id', 'invoices', ['id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'], unique=True)
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_payer_id', 'invoices', ['payer_id'])
    op.create_index('ix_invoices_billable_item_ref', 'invoices', ['billable_item_ref'])
    op.create_index('ix_invoices_payment_reference', 'invoices', ['payment_reference'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('transaction_number', sa.String(50), nullable=False),
        sa.Column(
            'external_payment_id',
            sa.String(255),
            nullable=False,
            comment='Processor payment id; idempotency key for settlement'
        ),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('payer_id', sa.String(64), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column(
            'status',
            sa.Enum('succeeded', 'failed', 'refunded', name='transactionstatus', create_type=False),
            nullable=False,
            server_default='succeeded'
        ),
        sa.Column(
            'processed_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column('refunded_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('refund_reference', sa.String(255), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column(
            'created_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP')
        ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('transaction_number', name='uq_transactions_transaction_number'),
        sa.UniqueConstraint('external_payment_id', name='uq_transactions_external_payment_id'),
        sa.UniqueConstraint('invoice_id', name='uq_transactions_invoice_id'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_transactions_id', 'transactions', ['id'])
    op.create_index('ix_transactions_payer_id', 'transactions', ['payer_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])


def downgrade() -> None:
    """Drop the ledger tables and their enum types."""
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_payer_id', table_name='transactions')
    op.drop_index('ix_transactions_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_invoices_payment_reference', table_name='invoices')
    op.drop_index('ix_invoices_billable_item_ref', table_name='invoices')
    op.drop_index('ix_invoices_payer_id', table_name='invoices')
    op.drop_index('ix_invoices_status', table_name='invoices')
    op.drop_index('ix_invoices_invoice_number', table_name='invoices')
    op.drop_index('ix_invoices_id', table_name='invoices')
    op.drop_table('invoices')

    op.execute("DROP TYPE transactionstatus")
    op.execute("DROP TYPE invoicestatus")
