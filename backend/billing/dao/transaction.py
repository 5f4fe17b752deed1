"""
Transaction Data Access Object (DAO).

WHAT: Database operations for the Transaction model.

WHY: Transactions are the idempotency record of the ledger. Every lookup the
settlement and refund paths need (by payment id, by invoice) lives here, and
the refund flip is a conditional UPDATE so duplicate refund confirmations
converge on one state change.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.base import utcnow
from billing.models.invoice import Invoice
from billing.models.transaction import Transaction, TransactionStatus


class TransactionDAO(BaseDAO[Transaction]):
    """Data Access Object for Transaction model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Transaction, session)

    async def get_by_external_payment_id(self, external_payment_id: str) -> Optional[Transaction]:
        """
        Get the transaction recorded for a processor payment id.

        WHY: This is the idempotency check. A hit means the payment has
        already been settled and must be returned, not re-recorded.

        Args:
            external_payment_id: Processor payment id

        Returns:
            Transaction if found, None otherwise
        """
        result = await self.session.execute(
            select(Transaction).where(Transaction.external_payment_id == external_payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_invoice(self, invoice_id: int) -> Optional[Transaction]:
        """Get the transaction that settled an invoice, if any."""
        result = await self.session.execute(
            select(Transaction).where(Transaction.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none()

    def _filtered(
        self,
        query: Select,
        payer_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> Select:
        if payer_id is not None:
            query = query.where(Transaction.payer_id == payer_id)
        if status is not None:
            query = query.where(Transaction.status == status)
        if start_date is not None:
            query = query.where(Transaction.processed_at >= start_date)
        if end_date is not None:
            query = query.where(Transaction.processed_at <= end_date)
        if search:
            pattern = f"%{search}%"
            query = query.join(Invoice, Invoice.id == Transaction.invoice_id).where(
                or_(
                    Transaction.transaction_number.ilike(pattern),
                    Transaction.external_payment_id.ilike(pattern),
                    Invoice.invoice_number.ilike(pattern),
                    Invoice.description.ilike(pattern),
                    Invoice.payer_email.ilike(pattern),
                    Invoice.payer_name.ilike(pattern),
                )
            )
        return query

    async def list_transactions(
        self,
        payer_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Transaction]:
        """
        List transactions, newest first, with optional filters.

        WHAT: Payer history when payer_id is given, otherwise the full ledger.

        Args:
            payer_id: Restrict to one payer
            status: Restrict to one status
            start_date: Processed at or after this moment
            end_date: Processed at or before this moment
            search: Case-insensitive substring of the transaction number,
                payment id, or the settled invoice's number, description,
                payer email or payer name
            skip: Pagination offset
            limit: Pagination limit

        Returns:
            List of matching transactions
        """
        query = self._filtered(
            select(Transaction), payer_id, status, start_date, end_date, search
        )
        query = (
            query.order_by(Transaction.processed_at.desc(), Transaction.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_transactions(
        self,
        payer_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> int:
        """Count the transactions list_transactions would return without pagination."""
        query = self._filtered(
            select(func.count()).select_from(Transaction),
            payer_id,
            status,
            start_date,
            end_date,
            search,
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def mark_refunded(
        self,
        transaction_id: int,
        refunded_amount: Decimal,
        refund_reference: Optional[str] = None,
        refunded_at: Optional[datetime] = None,
    ) -> bool:
        """
        Flip a transaction from succeeded to refunded.

        WHAT: UPDATE ... WHERE id = :id AND status = 'succeeded'.

        WHY: A refund issued through the API and the processor's
        charge.refunded webhook both try to record the same refund. Only one
        UPDATE matches; the other sees rowcount 0 and knows it lost.

        Args:
            transaction_id: Transaction ID
            refunded_amount: Amount returned to the payer
            refund_reference: Processor refund id
            refunded_at: Refund time (defaults to now)

        Returns:
            True if this call performed the transition
        """
        now = refunded_at or utcnow()
        result = await self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.SUCCEEDED,
            )
            .values(
                status=TransactionStatus.REFUNDED,
                refunded_amount=refunded_amount,
                refund_reference=refund_reference,
                refunded_at=now,
                updated_at=now,
            )
        )
        return result.rowcount > 0
