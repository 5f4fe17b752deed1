"""
Transaction model for settled payments.

WHAT: SQLAlchemy model recording one successful settlement of an invoice.

WHY: The transaction is the other half of the ledger. Two unique
constraints carry the double-settlement invariant, so correctness does not
depend on application locks:
1. external_payment_id is unique: one row per processor payment
2. invoice_id is unique: an invoice is settled by exactly one payment

HOW: Rows are inserted `succeeded` by the settlement service and later
flipped to `refunded` by the refund service. Rows are never deleted.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing.models.base import Base, TimestampMixin, utcnow


class TransactionStatus(str, Enum):
    """
    Transaction status.

    WHY: FAILED exists for parity with the processor's vocabulary; the
    engine itself only ever writes SUCCEEDED and REFUNDED.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class Transaction(TimestampMixin, Base):
    """
    Ledger record of a settled payment.

    Attributes:
        id: Primary key
        transaction_number: Unique human-readable identifier
        external_payment_id: Processor payment id (idempotency key)
        invoice_id: Settled invoice (unique)
        payer_id: Paying user reference
        amount: Settled amount
        currency: ISO currency code
        status: succeeded / failed / refunded
        processed_at: When settlement was recorded
        refunded_amount: Amount returned to the payer (partial or full)
        refund_reference: Processor refund id
        refunded_at: When the refund was recorded
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    transaction_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        comment="Unique transaction number (e.g., TXN-20260101-1A2B3C4D)",
    )
    external_payment_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        comment="Processor payment id; idempotency key for settlement",
    )
    invoice_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
        comment="Settled invoice (one settlement per invoice)",
    )
    payer_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Paying user reference",
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        comment="Settled amount",
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="usd",
        comment="ISO currency code",
    )

    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(
            TransactionStatus,
            name="transactionstatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
        default=TransactionStatus.SUCCEEDED,
        index=True,
        comment="Current transaction status",
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        comment="When settlement was recorded",
    )

    # Refund tracking
    refunded_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        nullable=True,
        comment="Amount refunded to the payer",
    )
    refund_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Processor refund id",
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="When the refund was recorded",
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, number={self.transaction_number}, "
            f"payment={self.external_payment_id}, status={self.status})>"
        )

    @property
    def is_refundable(self) -> bool:
        return self.status == TransactionStatus.SUCCEEDED

    @property
    def is_partial_refund(self) -> bool:
        """
        Check if the recorded refund returned less than the settled amount.

        WHY: Ledger status is `refunded` for any refund; this keeps the
        monetary truth visible to reporting.
        """
        return (
            self.status == TransactionStatus.REFUNDED
            and self.refunded_amount is not None
            and self.refunded_amount < self.amount
        )
