"""
Invoice model for billing and settlement tracking.

WHAT: SQLAlchemy model representing an amount owed by a payer.

WHY: The invoice is one half of the ledger. Its status must always agree
with the transaction that settled it:
1. pending: created, no successful payment recorded
2. paid: exactly one succeeded transaction references it
3. refunded: that transaction has been refunded

HOW: Uses SQLAlchemy 2.0 with:
- Status enum for the three-state lifecycle
- Amount columns with a CHECK constraint enforcing total = amount + tax
- Payer contact snapshot so notifications need no user lookup
- The latest processor payment reference for the reconciliation sweep
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing.models.base import Base, TimestampMixin, utcnow


class InvoiceStatus(str, Enum):
    """
    Invoice lifecycle status.

    WHY: Only three legal states exist:
    - PENDING: Created, awaiting payment
    - PAID: Settled by exactly one successful payment
    - REFUNDED: The settling payment has been refunded

    Legal transitions are PENDING -> PAID (settlement) and
    PAID -> REFUNDED (refund). Nothing else.
    """

    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class Invoice(TimestampMixin, Base):
    """
    Invoice model.

    WHAT: Represents an amount owed by a payer for a billable item.

    WHY: Financial amounts are immutable after creation. Corrections happen
    through refunds, never by editing the invoice.

    Attributes:
        id: Primary key
        invoice_number: Unique human-readable identifier (display only)
        payer_id: Opaque reference to the paying user
        payer_email: Contact address captured at creation
        payer_name: Display name captured at creation
        billable_item_ref: Optional reference to the billed item (enrollment etc.)
        amount: Base amount
        tax_amount: Tax amount
        total_amount: amount + tax_amount
        currency: ISO currency code (lowercase, processor convention)
        description: Free-text line description
        status: pending / paid / refunded
        issue_date: Date issued
        due_date: Payment due date
        paid_at: Set once, when the invoice transitions to paid
        payment_reference: Latest processor payment id issued for this invoice
    """

    __tablename__ = "invoices"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
        CheckConstraint("tax_amount >= 0", name="ck_invoices_tax_non_negative"),
        CheckConstraint(
            "total_amount = amount + tax_amount",
            name="ck_invoices_total_matches",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    invoice_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique invoice number (e.g., INV-2026-0001)",
    )

    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(
            InvoiceStatus,
            name="invoicestatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
        default=InvoiceStatus.PENDING,
        index=True,
        comment="Current invoice status",
    )

    # Payer
    payer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Paying user reference",
    )
    payer_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Payer contact email captured at creation",
    )
    payer_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Payer display name captured at creation",
    )
    billable_item_ref: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Billed item reference (e.g. enrollment id)",
    )

    # Amounts (immutable after creation)
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Base amount",
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Tax amount",
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="amount + tax_amount",
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="usd",
        comment="ISO currency code",
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="Line description",
    )

    # Dates
    issue_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        default=date.today,
        comment="Date invoice was issued",
    )
    due_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Payment due date",
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="When the invoice was settled",
    )

    # Processor reference
    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Latest processor payment id issued for this invoice",
    )
    last_reconciled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        index=True,
        comment="When the reconciliation sweep last checked this invoice",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"

    @property
    def is_settled(self) -> bool:
        """
        Check if a payment has ever been recorded against this invoice.

        WHY: A refunded invoice was settled once and can never be paid again.
        """
        return self.status in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED)

    @classmethod
    def generate_invoice_number(cls, sequence: int, year: Optional[int] = None) -> str:
        """
        Generate a human-readable invoice number.

        HOW: Format INV-YYYY-NNNN where NNNN is a zero-padded sequence.

        Args:
            sequence: Sequential number for this invoice
            year: Year component (defaults to current UTC year)

        Returns:
            Formatted invoice number string
        """
        year = year or utcnow().year
        return f"INV-{year}-{sequence:04d}"
