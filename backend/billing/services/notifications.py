"""
Post-commit notification dispatch.

WHAT: A bounded in-process queue plus a worker task that sends payer
notifications (receipt, payment failed, refund confirmation).

WHY: Notification delivery must never hold a database transaction open,
delay a settlement response, or turn a committed settlement into an error.
Services enqueue after commit and move on:
1. dispatch() never awaits delivery
2. dispatch() never raises, even when the queue is full
3. Delivery failures are logged, never propagated

HOW: asyncio.Queue with a single consumer task started and stopped with
the application. drain() waits for queued work, which tests and shutdown
use to flush pending notifications.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from billing.core.config import settings
from billing.models.invoice import Invoice
from billing.models.transaction import Transaction
from billing.services.email import EmailService

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """One email to deliver after commit."""

    recipient: str
    template: str
    data: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Notification builders
# ============================================================================


def _money(amount: Optional[Decimal]) -> str:
    return f"{Decimal(amount or 0):.2f}"


def payment_receipt(invoice: Invoice, transaction: Transaction) -> Notification:
    return Notification(
        recipient=invoice.payer_email,
        template="payment_receipt",
        data={
            "payer_name": invoice.payer_name,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "amount": _money(transaction.amount),
            "currency": transaction.currency,
            "transaction_number": transaction.transaction_number,
            "paid_at": transaction.processed_at.strftime("%Y-%m-%d %H:%M UTC"),
        },
    )


def payment_failed(invoice: Invoice, failure_message: Optional[str] = None) -> Notification:
    return Notification(
        recipient=invoice.payer_email,
        template="payment_failed",
        data={
            "payer_name": invoice.payer_name,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "amount": _money(invoice.total_amount),
            "currency": invoice.currency,
            "failure_message": failure_message,
        },
    )


def refund_confirmation(
    invoice: Invoice,
    transaction: Transaction,
    refunded_amount: Decimal,
    reason: Optional[str] = None,
) -> Notification:
    return Notification(
        recipient=invoice.payer_email,
        template="refund_confirmation",
        data={
            "payer_name": invoice.payer_name,
            "invoice_number": invoice.invoice_number,
            "refunded_amount": _money(refunded_amount),
            "currency": transaction.currency,
            "transaction_number": transaction.transaction_number,
            "reason": reason,
        },
    )


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """
    Queue and worker for post-commit notifications.

    Attributes:
        email_service: Renders and delivers each notification
        dropped: Count of notifications refused because the queue was full
    """

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        max_queue_size: Optional[int] = None,
    ):
        self.email_service = email_service or EmailService()
        self._queue: "asyncio.Queue[Notification]" = asyncio.Queue(
            maxsize=max_queue_size or settings.NOTIFICATION_QUEUE_SIZE
        )
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def dispatch(self, notification: Notification) -> None:
        """
        Enqueue a notification without waiting for delivery.

        WHY: Called right after a ledger commit; nothing here may fail the
        caller.
        """
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                f"Notification queue full, dropping {notification.template} email",
                extra={"template": notification.template, "to": notification.recipient},
            )

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._worker(), name="notification-dispatcher")
        logger.info("Notification dispatcher started")

    async def stop(self, timeout: float = 5.0) -> None:
        """
        Flush queued notifications (bounded by timeout) and stop the worker.
        """
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Notification dispatcher stopped with {self.pending} undelivered emails"
            )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Notification dispatcher stopped")

    async def drain(self) -> None:
        """
        Wait until every queued notification has been handled.

        HOW: With a running worker, waits on the queue; otherwise delivers
        inline.
        """
        if self.is_running:
            await self._queue.join()
            return
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _worker(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        # Delivery problems end here; ledger state is already committed
        try:
            result = await self.email_service.send(
                notification.recipient,
                notification.template,
                notification.data,
            )
        except Exception:
            logger.exception(
                f"Failed to deliver {notification.template} email",
                extra={"template": notification.template, "to": notification.recipient},
            )
            return

        if not result.success:
            logger.warning(
                f"{notification.template} email to {notification.recipient} not delivered",
                extra={"template": notification.template, "error": result.error},
            )
