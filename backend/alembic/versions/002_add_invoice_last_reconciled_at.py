"""Track when the reconciliation sweep last checked an invoice

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

WHAT: Adds invoices.last_reconciled_at and an index on it.

WHY: The sweep orders its candidates by this column so that invoices it
keeps finding unconfirmed rotate behind ones it has not checked yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'invoices',
        sa.Column(
            'last_reconciled_at',
            sa.DateTime(),
            nullable=True,
            comment='When the reconciliation sweep last checked this invoice',
        ),
    )
    op.create_index('ix_invoices_last_reconciled_at', 'invoices', ['last_reconciled_at'])


def downgrade() -> None:
    op.drop_index('ix_invoices_last_reconciled_at', table_name='invoices')
    op.drop_column('invoices', 'last_reconciled_at')
