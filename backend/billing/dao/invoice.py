"""
Invoice Data Access Object (DAO).

WHAT: Database operations for the Invoice model.

WHY: The DAO pattern:
1. Separates data access from settlement and refund logic
2. Keeps each ledger transition an explicit, named operation
3. Encapsulates the queries the reconciliation sweep relies on

HOW: Extends BaseDAO with invoice-specific queries:
- Lookup by invoice number and payer
- Number sequencing
- Status transitions (pending -> paid -> refunded)
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.base import utcnow
from billing.models.invoice import Invoice, InvoiceStatus


class InvoiceDAO(BaseDAO[Invoice]):
    """
    Data Access Object for Invoice model.

    WHAT: Provides create, query and transition operations for invoices.

    WHY: Transitions are written as guarded UPDATEs so a row in the wrong
    state is never silently overwritten.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize InvoiceDAO.

        Args:
            session: Async database session
        """
        super().__init__(Invoice, session)

    async def get_by_invoice_number(self, invoice_number: str) -> Optional[Invoice]:
        """
        Get an invoice by its human-readable number.

        Args:
            invoice_number: The invoice number (e.g., INV-2026-0001)

        Returns:
            Invoice if found, None otherwise
        """
        result = await self.session.execute(
            select(Invoice).where(Invoice.invoice_number == invoice_number)
        )
        return result.scalar_one_or_none()

    async def list_by_payer(
        self,
        payer_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        """
        Get all invoices owed by a payer, newest first.

        Args:
            payer_id: Paying user reference
            skip: Pagination offset
            limit: Pagination limit

        Returns:
            List of the payer's invoices
        """
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.payer_id == payer_id)
            .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_next_sequence(self, year: int) -> int:
        """
        Get the next invoice sequence number for a year.

        WHAT: Count invoices numbered in `year` and add one.

        WHY: Two concurrent creators can compute the same number; the unique
        constraint on invoice_number rejects the loser and the caller retries.

        Args:
            year: Invoice number year component

        Returns:
            Next sequence number
        """
        result = await self.session.execute(
            select(func.count())
            .select_from(Invoice)
            .where(Invoice.invoice_number.like(f"INV-{year}-%"))
        )
        return result.scalar_one() + 1

    async def get_pending_with_reference(self, limit: int = 100) -> List[Invoice]:
        """
        Get pending invoices that already have a processor payment reference.

        WHAT: Candidates for the reconciliation sweep.

        WHY: A pending invoice with a reference had a payment session issued;
        if the webhook was lost and the client never confirmed, only the
        sweep will settle it. Never-checked invoices come first, then the
        least recently checked, so abandoned payments cannot starve newer
        ones once there are more candidates than one batch holds.

        Args:
            limit: Maximum invoices to return

        Returns:
            Candidate invoices, least recently reconciled first
        """
        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.status == InvoiceStatus.PENDING,
                Invoice.payment_reference.is_not(None),
            )
            .order_by(Invoice.last_reconciled_at.asc().nulls_first(), Invoice.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_reconciled(self, invoice_id: int, checked_at: Optional[datetime] = None) -> bool:
        """
        Record that the sweep checked a still-pending invoice.

        Returns:
            True if the invoice was still pending
        """
        result = await self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PENDING,
            )
            .values(last_reconciled_at=checked_at or utcnow())
        )
        return result.rowcount > 0

    async def set_payment_reference(self, invoice_id: int, payment_reference: str) -> bool:
        """
        Record the latest processor payment id issued for a pending invoice.

        Returns:
            True if the invoice was pending and the reference was stored
        """
        result = await self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PENDING,
            )
            .values(payment_reference=payment_reference, updated_at=utcnow())
        )
        return result.rowcount > 0

    async def mark_paid(
        self,
        invoice_id: int,
        payment_reference: str,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Transition an invoice from pending to paid.

        WHAT: Guarded UPDATE ... WHERE status = 'pending'.

        WHY: paid_at is set exactly once. If the row is no longer pending the
        update touches nothing and the caller decides what that means.

        Args:
            invoice_id: Invoice ID
            payment_reference: Processor payment id that settled it
            paid_at: Settlement time (defaults to now)

        Returns:
            True if the transition happened
        """
        now = paid_at or utcnow()
        result = await self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PENDING,
            )
            .values(
                status=InvoiceStatus.PAID,
                paid_at=now,
                payment_reference=payment_reference,
                updated_at=now,
            )
        )
        return result.rowcount > 0

    async def mark_refunded(self, invoice_id: int) -> bool:
        """
        Transition an invoice from paid to refunded.

        Returns:
            True if the transition happened
        """
        result = await self.session.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice_id,
                Invoice.status == InvoiceStatus.PAID,
            )
            .values(status=InvoiceStatus.REFUNDED, updated_at=utcnow())
        )
        return result.rowcount > 0
