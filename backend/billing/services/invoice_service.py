"""
Invoice service.

WHAT: Creates invoices from billable items and reads them back.

WHY: Invoice creation is the only place financial amounts are written.
Totals are computed once, quantized to cents, and never edited afterwards;
corrections happen through refunds.

HOW: Computes totals, numbers the invoice INV-YYYY-NNNN and commits.
A number collision with a concurrent creator is rejected by the unique
constraint and retried with a fresh sequence.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.config import settings
from billing.core.exceptions import InvoiceNotFoundError, ValidationError
from billing.dao.invoice import InvoiceDAO
from billing.models.base import utcnow
from billing.models.invoice import Invoice, InvoiceStatus
from billing.schemas.invoice import BillableItem, PayerInfo

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
INVOICE_NUMBER_ATTEMPTS = 3


def compute_totals(amount: Decimal, tax_amount: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Quantize amounts and compute the invoice total.

    Args:
        amount: Base amount
        tax_amount: Tax amount

    Returns:
        Tuple of (amount, tax_amount, total_amount), each to 2 places

    Raises:
        ValidationError: If amount <= 0, tax < 0, or either is not a number
    """
    try:
        amount = Decimal(amount).quantize(CENT)
        tax_amount = Decimal(tax_amount).quantize(CENT)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(message="Amounts must be decimal numbers")

    if not amount.is_finite() or amount <= 0:
        raise ValidationError(message="Invoice amount must be greater than zero", amount=str(amount))
    if not tax_amount.is_finite() or tax_amount < 0:
        raise ValidationError(message="Tax amount cannot be negative", tax_amount=str(tax_amount))

    return amount, tax_amount, amount + tax_amount


class InvoiceService:
    """
    Invoice creation and lookup.

    WHAT: create_invoice, get_invoice, list_payer_invoices.

    WHY: Invoices have no update operation. Status changes belong to the
    settlement and refund services.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.invoice_dao = InvoiceDAO(session)

    async def create_invoice(self, payer: PayerInfo, item: BillableItem) -> Invoice:
        """
        Create a pending invoice for a billable item.

        Args:
            payer: Payer reference and contact snapshot
            item: What is being billed and for how much

        Returns:
            The committed invoice

        Raises:
            ValidationError: If amounts are invalid or no number could be allocated
        """
        amount, tax_amount, total_amount = compute_totals(item.amount, item.tax_amount)
        currency = (item.currency or settings.DEFAULT_CURRENCY).lower()
        issue_date = utcnow().date()
        due_date = issue_date + timedelta(days=settings.INVOICE_DUE_DAYS)

        for attempt in range(INVOICE_NUMBER_ATTEMPTS):
            sequence = await self.invoice_dao.get_next_sequence(issue_date.year) + attempt
            invoice_number = Invoice.generate_invoice_number(sequence, year=issue_date.year)
            try:
                invoice = await self.invoice_dao.create(
                    invoice_number=invoice_number,
                    status=InvoiceStatus.PENDING,
                    payer_id=payer.payer_id,
                    payer_email=str(payer.email),
                    payer_name=payer.name,
                    billable_item_ref=item.reference,
                    amount=amount,
                    tax_amount=tax_amount,
                    total_amount=total_amount,
                    currency=currency,
                    description=item.description,
                    issue_date=issue_date,
                    due_date=due_date,
                )
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.warning(
                    f"Invoice number {invoice_number} taken, retrying",
                    extra={"invoice_number": invoice_number, "attempt": attempt + 1},
                )
                continue

            logger.info(
                f"Created invoice {invoice.invoice_number} for payer {payer.payer_id}",
                extra={
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "payer_id": payer.payer_id,
                    "total_amount": str(total_amount),
                },
            )
            return invoice

        raise ValidationError(message="Could not allocate a unique invoice number")

    async def get_invoice(self, invoice_id: int) -> Invoice:
        """
        Get an invoice by ID.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
        """
        invoice = await self.invoice_dao.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id=invoice_id)
        return invoice

    async def list_payer_invoices(
        self,
        payer_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[Invoice], int]:
        """
        List a payer's invoices, newest first.

        Returns:
            Tuple of (page of invoices, total count for the payer)
        """
        invoices = await self.invoice_dao.list_by_payer(payer_id, skip=skip, limit=limit)
        total = await self.invoice_dao.count(payer_id=payer_id)
        return invoices, total

    async def get_payer_invoice(self, invoice_id: int, payer_id: Optional[str]) -> Invoice:
        """
        Get an invoice, checking payer ownership when a payer is given.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist or is not the payer's
        """
        invoice = await self.get_invoice(invoice_id)
        if payer_id is not None and invoice.payer_id != payer_id:
            # Not found rather than forbidden: do not reveal other payers' invoices
            raise InvoiceNotFoundError(invoice_id=invoice_id)
        return invoice
