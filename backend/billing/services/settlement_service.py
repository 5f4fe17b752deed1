"""
Settlement service.

WHAT: Turns a "payment succeeded" claim into exactly one ledger change:
a succeeded Transaction plus its Invoice moving pending -> paid.

WHY: Claims arrive from two racing, repeatable sources: the client's
confirm call and the processor's webhook. Whatever the order, and however
often each arrives, the payment must be recorded once. Correctness comes
from the store, not from in-process locks:
1. transactions.external_payment_id is unique (one row per payment)
2. transactions.invoice_id is unique (one payment per invoice)
3. The existing row is re-checked immediately before the insert
4. A loser's IntegrityError is rolled back and turned into a read

HOW: settle() verifies the claim (against the processor on the client
path, from the signed event on the webhook path), writes both rows in one
commit, and only then enqueues the receipt email.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.exceptions import (
    AlreadySettledError,
    AmountMismatchError,
    AuthorizationError,
    InvoiceNotFoundError,
    PaymentProcessorError,
    ProcessorConfigError,
    ProcessorUnavailableError,
    SettlementNotConfirmedError,
    ValidationError,
)
from billing.dao.invoice import InvoiceDAO
from billing.dao.transaction import TransactionDAO
from billing.models.base import utcnow
from billing.models.invoice import Invoice
from billing.models.transaction import Transaction, TransactionStatus
from billing.services.notifications import NotificationDispatcher, payment_receipt
from billing.services.payment_gateway import PaymentGateway, PaymentSession

logger = logging.getLogger(__name__)

SETTLEMENT_ATTEMPTS = 2


def generate_transaction_number() -> str:
    """Generate a transaction number like TXN-20260101-1A2B3C4D."""
    return f"TXN-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


@dataclass
class SettlementResult:
    """
    Outcome of settle().

    Attributes:
        transaction: The Transaction recording the payment
        created: False when the payment had already been recorded
    """

    transaction: Transaction
    created: bool


class SettlementService:
    """
    Payment sessions and idempotent settlement.

    Attributes:
        gateway: Payment processor adapter
        notifier: Post-commit notification dispatcher (optional)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.invoice_dao = InvoiceDAO(session)
        self.transaction_dao = TransactionDAO(session)

    # ========================================================================
    # Payment sessions
    # ========================================================================

    async def create_payment_session(self, invoice_id: int, payer_id: str) -> Tuple[Invoice, PaymentSession]:
        """
        Open a processor payment session for a pending invoice.

        WHAT: Creates a PaymentIntent tagged with invoice and payer ids and
        stores its id on the invoice as the latest payment reference.

        WHY: The stored reference lets the reconciliation sweep find and
        settle payments whose webhook and client confirmation both got lost.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
            AuthorizationError: If the invoice belongs to another payer
            AlreadySettledError: If the invoice is paid or refunded
            ProcessorUnavailableError, ProcessorConfigError: Processor failures
        """
        invoice = await self._load_invoice(invoice_id, payer_id)
        if invoice.is_settled:
            raise AlreadySettledError(
                message="Invoice is already settled",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        payment_session = await self.gateway.create_payment_session(invoice)

        await self.invoice_dao.set_payment_reference(invoice.id, payment_session.id)
        await self.session.commit()

        logger.info(
            f"Payment session {payment_session.id} opened for invoice {invoice.invoice_number}",
            extra={"invoice_id": invoice.id, "payment_id": payment_session.id, "payer_id": payer_id},
        )
        return invoice, payment_session

    # ========================================================================
    # Settlement
    # ========================================================================

    async def settle(
        self,
        external_payment_id: str,
        invoice_id: int,
        payer_id: str,
        verified_payment: Optional[PaymentSession] = None,
    ) -> SettlementResult:
        """
        Record a successful payment exactly once.

        WHAT: Idempotent pending -> paid transition for one invoice.

        WHY: Safe to call any number of times, from either entry point, in
        any order. Repeats return the original Transaction with
        created=False.

        HOW:
        1. Known payment id -> return the existing row
        2. Load invoice, check payer, reject if settled by another payment
        3. Verify (processor lookup unless verified_payment is given)
        4. Re-check, insert Transaction, mark invoice paid, commit
        5. IntegrityError -> rollback, re-read, return or reject
        6. After commit, enqueue the receipt

        Args:
            external_payment_id: Processor payment id
            invoice_id: Invoice the payment claims to settle
            payer_id: Payer the claim is made for
            verified_payment: Processor-confirmed payment (webhook path only)

        Returns:
            SettlementResult

        Raises:
            InvoiceNotFoundError: Unknown invoice
            AuthorizationError: Payer does not own the invoice
            AlreadySettledError: Invoice settled by a different payment
            SettlementNotConfirmedError: Processor does not confirm success
            AmountMismatchError: Confirmed amount differs from invoice total
            ValidationError: Payment already recorded against another invoice
            ProcessorConfigError: Processor credentials missing or rejected
        """
        log_extra = {
            "payment_id": external_payment_id,
            "invoice_id": invoice_id,
            "payer_id": payer_id,
            "source": "webhook" if verified_payment is not None else "client",
        }

        existing = await self.transaction_dao.get_by_external_payment_id(external_payment_id)
        if existing is not None:
            return self._already_recorded(existing, invoice_id, log_extra)

        invoice = await self._load_invoice(invoice_id, payer_id)
        if invoice.is_settled:
            # A concurrent caller may have committed this same payment since
            # the lookup above.
            settled_by = await self.transaction_dao.get_by_invoice(invoice_id)
            if settled_by is not None and settled_by.external_payment_id == external_payment_id:
                return self._already_recorded(settled_by, invoice_id, log_extra)
            logger.error(
                f"Invoice {invoice_id} already settled, rejecting payment {external_payment_id}",
                extra=log_extra,
            )
            raise AlreadySettledError(
                invoice_id=invoice_id,
                external_payment_id=external_payment_id,
            )

        payment = verified_payment
        if payment is None:
            payment = await self._confirm_with_processor(external_payment_id, log_extra)
        self._check_payment(payment, invoice, payer_id, log_extra)

        amount = invoice.total_amount
        currency = invoice.currency

        for attempt in range(SETTLEMENT_ATTEMPTS):
            try:
                raced = await self.transaction_dao.get_by_external_payment_id(external_payment_id)
                if raced is not None:
                    return self._already_recorded(raced, invoice_id, log_extra)

                now = utcnow()
                transaction = await self.transaction_dao.create(
                    transaction_number=generate_transaction_number(),
                    external_payment_id=external_payment_id,
                    invoice_id=invoice_id,
                    payer_id=payer_id,
                    amount=amount,
                    currency=currency,
                    status=TransactionStatus.SUCCEEDED,
                    processed_at=now,
                )
                marked = await self.invoice_dao.mark_paid(invoice_id, external_payment_id, paid_at=now)
                if not marked:
                    await self.session.rollback()
                    resolved = await self._resolve_conflict(external_payment_id, invoice_id, log_extra)
                    if resolved is not None:
                        return resolved
                    raise AlreadySettledError(
                        invoice_id=invoice_id,
                        external_payment_id=external_payment_id,
                    )
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.info(
                    f"Settlement conflict for payment {external_payment_id}, re-reading",
                    extra=log_extra,
                )
                resolved = await self._resolve_conflict(external_payment_id, invoice_id, log_extra)
                if resolved is not None:
                    return resolved
                continue

            logger.info(
                f"Settled invoice {invoice_id} with payment {external_payment_id}",
                extra={**log_extra, "transaction_id": transaction.id, "amount": str(amount)},
            )
            await self.session.refresh(invoice)
            self._notify_receipt(invoice, transaction)
            return SettlementResult(transaction=transaction, created=True)

        raise AlreadySettledError(
            message="Settlement could not be recorded",
            invoice_id=invoice_id,
            external_payment_id=external_payment_id,
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _load_invoice(self, invoice_id: int, payer_id: str) -> Invoice:
        invoice = await self.invoice_dao.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id=invoice_id)
        if invoice.payer_id != payer_id:
            logger.warning(
                f"Payer {payer_id} does not own invoice {invoice_id}",
                extra={"invoice_id": invoice_id, "payer_id": payer_id},
            )
            raise AuthorizationError(
                message="Invoice does not belong to this payer",
                invoice_id=invoice_id,
            )
        return invoice

    def _already_recorded(self, transaction: Transaction, invoice_id: int, log_extra: dict) -> SettlementResult:
        if transaction.invoice_id != invoice_id:
            logger.error(
                f"Payment {transaction.external_payment_id} already recorded against "
                f"invoice {transaction.invoice_id}",
                extra=log_extra,
            )
            raise ValidationError(
                message="Payment is already recorded against a different invoice",
                invoice_id=invoice_id,
                external_payment_id=transaction.external_payment_id,
            )
        logger.info(
            f"Payment {transaction.external_payment_id} already settled",
            extra={**log_extra, "transaction_id": transaction.id},
        )
        return SettlementResult(transaction=transaction, created=False)

    async def _resolve_conflict(
        self,
        external_payment_id: str,
        invoice_id: int,
        log_extra: dict,
    ) -> Optional[SettlementResult]:
        """
        Interpret a unique-constraint rejection after rollback.

        Returns:
            The winner's result for the same payment, or None when the
            conflict was unrelated (transaction number) and a retry is due

        Raises:
            AlreadySettledError: A different payment settled the invoice
        """
        winner = await self.transaction_dao.get_by_external_payment_id(external_payment_id)
        if winner is not None:
            return self._already_recorded(winner, invoice_id, log_extra)

        other = await self.transaction_dao.get_by_invoice(invoice_id)
        if other is not None:
            logger.error(
                f"Invoice {invoice_id} settled concurrently by payment {other.external_payment_id}",
                extra=log_extra,
            )
            raise AlreadySettledError(
                invoice_id=invoice_id,
                external_payment_id=external_payment_id,
            )
        return None

    async def _confirm_with_processor(self, external_payment_id: str, log_extra: dict) -> PaymentSession:
        """
        Fetch the authoritative payment status.

        WHY: A timeout or outage is never treated as success. No ledger row
        has been written yet, so the caller may safely retry.
        """
        try:
            return await self.gateway.retrieve_session(external_payment_id)
        except ProcessorConfigError:
            raise
        except ProcessorUnavailableError as e:
            logger.warning(
                f"Could not confirm payment {external_payment_id}: {e.message}",
                extra=log_extra,
            )
            raise SettlementNotConfirmedError(
                message="Payment processor could not confirm the payment, retry later",
                retryable=True,
                external_payment_id=external_payment_id,
            )
        except PaymentProcessorError as e:
            logger.warning(
                f"Processor rejected lookup of payment {external_payment_id}: {e.message}",
                extra=log_extra,
            )
            raise SettlementNotConfirmedError(
                message="Payment processor does not recognise this payment",
                external_payment_id=external_payment_id,
            )

    def _check_payment(
        self,
        payment: PaymentSession,
        invoice: Invoice,
        payer_id: str,
        log_extra: dict,
    ) -> None:
        if not payment.succeeded:
            logger.info(
                f"Payment {payment.id} not succeeded (status={payment.status})",
                extra=log_extra,
            )
            raise SettlementNotConfirmedError(
                external_payment_id=payment.id,
                processor_status=payment.status,
            )

        tagged_invoice = payment.metadata.get("invoice_id")
        if tagged_invoice is not None and tagged_invoice != str(invoice.id):
            logger.error(
                f"Payment {payment.id} is tagged for invoice {tagged_invoice}, not {invoice.id}",
                extra=log_extra,
            )
            raise SettlementNotConfirmedError(
                message="Payment does not belong to this invoice",
                external_payment_id=payment.id,
            )

        tagged_payer = payment.metadata.get("payer_id")
        if tagged_payer is not None and tagged_payer != payer_id:
            raise AuthorizationError(
                message="Payment was made by a different payer",
                external_payment_id=payment.id,
            )

        if payment.amount != invoice.total_amount or payment.currency.lower() != invoice.currency.lower():
            logger.error(
                f"Amount mismatch for invoice {invoice.id}: paid {payment.amount} "
                f"{payment.currency}, owed {invoice.total_amount} {invoice.currency}",
                extra=log_extra,
            )
            raise AmountMismatchError(
                invoice_id=invoice.id,
                expected=str(invoice.total_amount),
                received=str(payment.amount),
                currency=payment.currency,
            )

    def _notify_receipt(self, invoice: Invoice, transaction: Transaction) -> None:
        if self.notifier is None:
            return
        self.notifier.dispatch(payment_receipt(invoice, transaction))
