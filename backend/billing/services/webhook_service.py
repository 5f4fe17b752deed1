"""
Webhook ingest for Stripe events.

WHAT: Verifies, decodes and routes processor webhooks to the ledger.

WHY: Webhooks are the processor's at-least-once channel. Handling must be:
1. Authenticated first: nothing is parsed before the signature checks out
2. Closed: every payload decodes into one of a fixed set of event kinds,
   unknown types included, so nothing is half-understood
3. Honest about retries: only unexpected failures surface as 5xx (the
   processor redelivers); deterministic ledger rejections are logged and
   acknowledged because redelivery cannot fix them

HOW: verify -> decode_event -> isinstance dispatch to the settlement and
refund services. The result carries a WebhookOutcome for logging and the
acknowledgement body.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.exceptions import (
    AmountMismatchError,
    AuthorizationError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
    SettlementNotConfirmedError,
    ValidationError,
)
from billing.dao.invoice import InvoiceDAO
from billing.models.invoice import InvoiceStatus
from billing.services.notifications import NotificationDispatcher, payment_failed
from billing.services.payment_gateway import PaymentGateway, PaymentSession, from_minor_units
from billing.services.refund_service import RefundService
from billing.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

# Ledger rejections that redelivery cannot change
DETERMINISTIC_REJECTIONS = (
    InvalidStateTransitionError,
    AmountMismatchError,
    ResourceNotFoundError,
    AuthorizationError,
    ValidationError,
    SettlementNotConfirmedError,
)


class WebhookEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    IGNORED = "ignored"


class WebhookOutcome(str, Enum):
    """What the ledger did with an acknowledged event."""

    SETTLED = "settled"
    DUPLICATE = "duplicate"
    NOTIFIED = "notified"
    REFUND_RECORDED = "refund_recorded"
    IGNORED = "ignored"
    DROPPED = "dropped"
    REJECTED = "rejected"


# ============================================================================
# Event union
# ============================================================================


@dataclass
class PaymentSucceededEvent:
    kind: ClassVar[WebhookEventKind] = WebhookEventKind.PAYMENT_SUCCEEDED

    event_id: str
    event_type: str
    payment_id: Optional[str]
    status: str
    amount: Decimal
    currency: str
    invoice_id: Optional[int]
    payer_id: Optional[str]
    metadata: Dict[str, str]

    def as_verified_payment(self) -> PaymentSession:
        return PaymentSession(
            id=self.payment_id or "",
            status=self.status,
            amount=self.amount,
            currency=self.currency,
            metadata=self.metadata,
        )


@dataclass
class PaymentFailedEvent:
    kind: ClassVar[WebhookEventKind] = WebhookEventKind.PAYMENT_FAILED

    event_id: str
    event_type: str
    payment_id: Optional[str]
    invoice_id: Optional[int]
    payer_id: Optional[str]
    failure_message: Optional[str] = None


@dataclass
class ChargeRefundedEvent:
    kind: ClassVar[WebhookEventKind] = WebhookEventKind.CHARGE_REFUNDED

    event_id: str
    event_type: str
    payment_id: Optional[str]
    charge_id: Optional[str]
    amount_refunded: Decimal
    refund_reference: Optional[str] = None


@dataclass
class IgnoredEvent:
    kind: ClassVar[WebhookEventKind] = WebhookEventKind.IGNORED

    event_id: str
    event_type: str


WebhookEvent = Union[PaymentSucceededEvent, PaymentFailedEvent, ChargeRefundedEvent, IgnoredEvent]


@dataclass
class WebhookResult:
    event_id: Optional[str]
    event_type: Optional[str]
    outcome: WebhookOutcome


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        return {}
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _parse_invoice_id(metadata: Dict[str, str]) -> Optional[int]:
    try:
        return int(metadata["invoice_id"])
    except (KeyError, ValueError):
        return None


def _cents(value: Any) -> Decimal:
    try:
        return from_minor_units(int(value))
    except (TypeError, ValueError):
        return Decimal("0.00")


def decode_event(event: Dict[str, Any]) -> WebhookEvent:
    """
    Decode a verified Stripe event into the closed event union.

    WHAT: payment_intent.succeeded, payment_intent.payment_failed and
    charge.refunded map to their own kinds; payment_intent.created and
    every other type map to IgnoredEvent.

    Args:
        event: Verified event dict

    Returns:
        One WebhookEvent variant
    """
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}

    if event_type == "payment_intent.succeeded":
        metadata = _metadata(obj)
        amount = obj.get("amount_received") or obj.get("amount")
        return PaymentSucceededEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=obj.get("id"),
            status=str(obj.get("status") or "succeeded"),
            amount=_cents(amount),
            currency=str(obj.get("currency") or ""),
            invoice_id=_parse_invoice_id(metadata),
            payer_id=metadata.get("payer_id"),
            metadata=metadata,
        )

    if event_type == "payment_intent.payment_failed":
        metadata = _metadata(obj)
        last_error = obj.get("last_payment_error") or {}
        return PaymentFailedEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=obj.get("id"),
            invoice_id=_parse_invoice_id(metadata),
            payer_id=metadata.get("payer_id"),
            failure_message=last_error.get("message") if isinstance(last_error, dict) else None,
        )

    if event_type == "charge.refunded":
        refunds = obj.get("refunds") or {}
        refund_data = refunds.get("data") if isinstance(refunds, dict) else None
        refund_reference = None
        if refund_data and isinstance(refund_data[0], dict):
            refund_reference = refund_data[0].get("id")
        return ChargeRefundedEvent(
            event_id=event_id,
            event_type=event_type,
            payment_id=obj.get("payment_intent"),
            charge_id=obj.get("id"),
            amount_refunded=_cents(obj.get("amount_refunded")),
            refund_reference=refund_reference,
        )

    return IgnoredEvent(event_id=event_id, event_type=event_type)


# ============================================================================
# Service
# ============================================================================


class WebhookService:
    """
    Routes verified webhook events to the ledger.

    Attributes:
        gateway: Used for signature verification only
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
        self.settlement_service = SettlementService(session, gateway, notifier)
        self.refund_service = RefundService(session, gateway, notifier)
        self.invoice_dao = InvoiceDAO(session)

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, decode and apply one webhook delivery.

        Raises:
            WebhookSignatureError: Signature or payload invalid (ledger untouched)
            ProcessorConfigError: No signing secret configured (ledger untouched)
        """
        raw_event = self.gateway.verify_webhook_signature(payload, signature)
        event = decode_event(raw_event)
        outcome = await self.process(event)

        logger.info(
            f"Webhook {event.event_type} {event.event_id}: {outcome.value}",
            extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": outcome.value},
        )
        return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome=outcome)

    async def process(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Apply a decoded event.

        Returns:
            WebhookOutcome; unexpected errors propagate
        """
        if isinstance(event, PaymentSucceededEvent):
            return await self._on_payment_succeeded(event)
        if isinstance(event, PaymentFailedEvent):
            return await self._on_payment_failed(event)
        if isinstance(event, ChargeRefundedEvent):
            return await self._on_charge_refunded(event)

        logger.debug(f"Ignoring webhook event type {event.event_type}")
        return WebhookOutcome.IGNORED

    async def _on_payment_succeeded(self, event: PaymentSucceededEvent) -> WebhookOutcome:
        if not event.payment_id or event.invoice_id is None or not event.payer_id:
            logger.warning(
                f"Dropping {event.event_type} {event.event_id}: missing payment metadata",
                extra={"event_id": event.event_id, "payment_id": event.payment_id},
            )
            return WebhookOutcome.DROPPED

        try:
            result = await self.settlement_service.settle(
                event.payment_id,
                event.invoice_id,
                event.payer_id,
                verified_payment=event.as_verified_payment(),
            )
        except DETERMINISTIC_REJECTIONS as e:
            logger.error(
                f"Rejected {event.event_type} {event.event_id}: {e.message}",
                extra={
                    "event_id": event.event_id,
                    "payment_id": event.payment_id,
                    "invoice_id": event.invoice_id,
                    "code": e.code,
                },
            )
            return WebhookOutcome.REJECTED

        return WebhookOutcome.SETTLED if result.created else WebhookOutcome.DUPLICATE

    async def _on_payment_failed(self, event: PaymentFailedEvent) -> WebhookOutcome:
        if event.invoice_id is None:
            logger.warning(
                f"Dropping {event.event_type} {event.event_id}: missing invoice metadata",
                extra={"event_id": event.event_id, "payment_id": event.payment_id},
            )
            return WebhookOutcome.DROPPED

        invoice = await self.invoice_dao.get_by_id(event.invoice_id)
        if invoice is None or (event.payer_id and invoice.payer_id != event.payer_id):
            logger.warning(
                f"Dropping {event.event_type} {event.event_id}: invoice {event.invoice_id} not found for payer",
                extra={"event_id": event.event_id, "invoice_id": event.invoice_id},
            )
            return WebhookOutcome.DROPPED

        if invoice.status != InvoiceStatus.PENDING:
            # An earlier attempt failed after a later one already settled
            return WebhookOutcome.IGNORED

        logger.info(
            f"Payment {event.payment_id} failed for invoice {invoice.invoice_number}",
            extra={"invoice_id": invoice.id, "payment_id": event.payment_id},
        )
        if self.notifier is not None:
            self.notifier.dispatch(payment_failed(invoice, event.failure_message))
        return WebhookOutcome.NOTIFIED

    async def _on_charge_refunded(self, event: ChargeRefundedEvent) -> WebhookOutcome:
        if not event.payment_id:
            logger.warning(
                f"Dropping {event.event_type} {event.event_id}: charge has no payment intent",
                extra={"event_id": event.event_id, "charge_id": event.charge_id},
            )
            return WebhookOutcome.DROPPED

        try:
            finalized = await self.refund_service.finalize_processor_refund(
                event.payment_id,
                event.amount_refunded,
                refund_reference=event.refund_reference,
            )
        except DETERMINISTIC_REJECTIONS as e:
            logger.error(
                f"Rejected {event.event_type} {event.event_id}: {e.message}",
                extra={"event_id": event.event_id, "payment_id": event.payment_id, "code": e.code},
            )
            return WebhookOutcome.REJECTED

        if finalized is None:
            return WebhookOutcome.DROPPED
        return WebhookOutcome.REFUND_RECORDED if finalized.recorded else WebhookOutcome.DUPLICATE
