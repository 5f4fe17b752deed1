"""
Refund service.

WHAT: Issues refunds through the processor and records them in the ledger;
also records refunds that were started elsewhere (processor dashboard).

WHY: A refund touches both ledger rows: the Transaction goes
succeeded -> refunded and its Invoice paid -> refunded, in one commit.
The same refund is usually reported twice (our API call, then the
processor's charge.refunded webhook), so the flip is a conditional UPDATE:
whichever arrives first records it, the other is a no-op and sends no
second email.

HOW: The processor call happens before any ledger write and carries an
idempotency key derived from the payment id, so a retried request cannot
refund twice.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.exceptions import (
    AlreadyRefundedError,
    InvalidStateTransitionError,
    TransactionNotFoundError,
    ValidationError,
)
from billing.dao.invoice import InvoiceDAO
from billing.dao.transaction import TransactionDAO
from billing.models.transaction import Transaction, TransactionStatus
from billing.services.notifications import NotificationDispatcher, refund_confirmation
from billing.services.payment_gateway import PaymentGateway, RefundResult, to_minor_units

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def refund_idempotency_key(external_payment_id: str, amount: Decimal) -> str:
    """
    Stripe idempotency key for refunding a payment.

    Note: The amount is part of the key. Stripe replays the stored response
    for a reused key, so a retry with a different amount must not share it.
    """
    return f"refund:{external_payment_id}:{to_minor_units(amount)}"


@dataclass
class RefundOutcome:
    """
    Result of refund().

    Attributes:
        refund: Processor refund
        transaction: Ledger transaction after the refund
        recorded: False when a concurrent webhook had already recorded it
    """

    refund: RefundResult
    transaction: Transaction
    recorded: bool


@dataclass
class FinalizedRefund:
    """Result of finalize_processor_refund()."""

    transaction: Transaction
    recorded: bool


class RefundService:
    """
    Refund issuing and recording.

    Attributes:
        gateway: Payment processor adapter
        notifier: Post-commit notification dispatcher (optional)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.invoice_dao = InvoiceDAO(session)
        self.transaction_dao = TransactionDAO(session)

    async def refund(
        self,
        transaction_id: int,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Refund a settled transaction, fully or partially.

        WHAT: Processor refund, then one commit flipping both ledger rows.

        WHY: Any refund, partial or full, moves the ledger to `refunded`;
        the refunded amount is kept on the transaction.

        Args:
            transaction_id: Transaction to refund
            amount: Amount to return (None refunds the full amount)
            reason: Free-text reason for the payer and the processor

        Returns:
            RefundOutcome

        Raises:
            TransactionNotFoundError: Unknown transaction
            AlreadyRefundedError: Transaction already refunded
            InvalidStateTransitionError: Transaction not in a refundable state
            ValidationError: Amount not > 0 or above the transaction amount
            ProcessorUnavailableError, PaymentProcessorError: Processor failures
        """
        transaction = await self.transaction_dao.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id=transaction_id)
        if transaction.status == TransactionStatus.REFUNDED:
            raise AlreadyRefundedError(transaction_id=transaction_id)
        if transaction.status != TransactionStatus.SUCCEEDED:
            raise InvalidStateTransitionError(
                message=f"Cannot refund a {transaction.status.value} transaction",
                transaction_id=transaction_id,
            )

        refund_amount = self._validate_amount(transaction, amount)
        partial = refund_amount < transaction.amount

        refund = await self.gateway.create_refund(
            transaction.external_payment_id,
            amount=refund_amount if partial else None,
            reason=reason,
            idempotency_key=refund_idempotency_key(transaction.external_payment_id, refund_amount),
        )

        recorded = await self._record(transaction, refund.amount, refund.id)
        await self.session.refresh(transaction)

        log_extra = {
            "transaction_id": transaction.id,
            "invoice_id": transaction.invoice_id,
            "refund_id": refund.id,
            "amount": str(refund.amount),
            "partial": partial,
        }
        if recorded:
            logger.info(f"Refunded transaction {transaction.transaction_number}", extra=log_extra)
            await self._notify(transaction, refund.amount, reason)
        else:
            logger.info(
                f"Refund for {transaction.transaction_number} already recorded by webhook",
                extra=log_extra,
            )

        return RefundOutcome(refund=refund, transaction=transaction, recorded=recorded)

    async def finalize_processor_refund(
        self,
        external_payment_id: str,
        amount_refunded: Decimal,
        refund_reference: Optional[str] = None,
    ) -> Optional[FinalizedRefund]:
        """
        Record a refund reported by the processor.

        WHAT: Handles charge.refunded. Confirms a refund we issued, or
        records one issued from the processor dashboard.

        WHY: Idempotent. Whichever of refund() and this method commits first
        performs the flip; the other changes nothing.

        Args:
            external_payment_id: Processor payment id of the refunded charge
            amount_refunded: Total amount refunded on the charge
            refund_reference: Processor refund id, if known

        Returns:
            FinalizedRefund, or None when the payment is not in the ledger
        """
        transaction = await self.transaction_dao.get_by_external_payment_id(external_payment_id)
        if transaction is None:
            logger.warning(
                f"Refund reported for unknown payment {external_payment_id}",
                extra={"payment_id": external_payment_id},
            )
            return None

        if transaction.status != TransactionStatus.SUCCEEDED:
            logger.info(
                f"Refund for payment {external_payment_id} already recorded",
                extra={"payment_id": external_payment_id, "transaction_id": transaction.id},
            )
            return FinalizedRefund(transaction=transaction, recorded=False)

        recorded = await self._record(transaction, amount_refunded, refund_reference)
        await self.session.refresh(transaction)

        if recorded:
            logger.info(
                f"Recorded processor refund for payment {external_payment_id}",
                extra={
                    "payment_id": external_payment_id,
                    "transaction_id": transaction.id,
                    "amount": str(amount_refunded),
                },
            )
            await self._notify(transaction, amount_refunded, None)

        return FinalizedRefund(transaction=transaction, recorded=recorded)

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _validate_amount(transaction: Transaction, amount: Optional[Decimal]) -> Decimal:
        if amount is None:
            return transaction.amount
        try:
            amount = Decimal(amount).quantize(CENT)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(message="Refund amount must be a decimal number")
        if amount <= 0:
            raise ValidationError(message="Refund amount must be greater than zero", amount=str(amount))
        if amount > transaction.amount:
            raise ValidationError(
                message="Refund amount exceeds the transaction amount",
                amount=str(amount),
                transaction_amount=str(transaction.amount),
            )
        return amount

    async def _record(
        self,
        transaction: Transaction,
        refunded_amount: Decimal,
        refund_reference: Optional[str],
    ) -> bool:
        """
        Flip transaction and invoice to refunded in one commit.

        Returns:
            True if this call performed the flip
        """
        invoice_id = transaction.invoice_id
        flipped = await self.transaction_dao.mark_refunded(
            transaction.id,
            refunded_amount=refunded_amount,
            refund_reference=refund_reference,
        )
        if not flipped:
            await self.session.rollback()
            return False

        if not await self.invoice_dao.mark_refunded(invoice_id):
            transaction_id = transaction.id
            await self.session.rollback()
            logger.error(
                f"Invoice {invoice_id} is not paid, refusing to refund transaction {transaction_id}",
                extra={"invoice_id": invoice_id, "transaction_id": transaction_id},
            )
            raise InvalidStateTransitionError(
                message="Invoice is not in a refundable state",
                invoice_id=invoice_id,
                transaction_id=transaction_id,
            )
        await self.session.commit()
        return True

    async def _notify(self, transaction: Transaction, amount: Decimal, reason: Optional[str]) -> None:
        if self.notifier is None:
            return
        invoice = await self.invoice_dao.get_by_id(transaction.invoice_id)
        if invoice is not None:
            self.notifier.dispatch(refund_confirmation(invoice, transaction, amount, reason))
