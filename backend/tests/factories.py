"""
Test factories for creating test data.

WHY: Factories provide a consistent, reusable way to create ledger rows,
processor objects and signed webhook deliveries, so tests stay consistent
when models change.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing.models.base import utcnow
from billing.models.invoice import Invoice, InvoiceStatus
from billing.models.transaction import Transaction, TransactionStatus
from billing.services.payment_gateway import to_minor_units

WEBHOOK_SECRET = "whsec_test_secret"


class InvoiceFactory:
    """
    Factory for creating Invoice test instances.

    Note: Amounts default to values exact in binary so SQLite's CHECK
    constraint on total_amount compares cleanly.
    """

    _counter = 0

    @classmethod
    async def create(
        cls,
        session: AsyncSession,
        payer_id: str = "payer-1",
        amount: Decimal = Decimal("90.00"),
        tax_amount: Decimal = Decimal("0.00"),
        currency: str = "usd",
        status: InvoiceStatus = InvoiceStatus.PENDING,
        payer_email: str = "payer@example.com",
        payer_name: Optional[str] = "Pat Payer",
        payment_reference: Optional[str] = None,
        invoice_number: Optional[str] = None,
    ) -> Invoice:
        """
        Create an invoice for testing.

        Returns:
            Committed Invoice instance
        """
        cls._counter += 1
        today = utcnow().date()
        invoice = Invoice(
            invoice_number=invoice_number or f"INV-TEST-{cls._counter:05d}",
            status=status,
            payer_id=payer_id,
            payer_email=payer_email,
            payer_name=payer_name,
            billable_item_ref=f"enrollment-{cls._counter}",
            amount=amount,
            tax_amount=tax_amount,
            total_amount=amount + tax_amount,
            currency=currency,
            description="Course enrollment",
            issue_date=today,
            due_date=today + timedelta(days=7),
            paid_at=utcnow() if status != InvoiceStatus.PENDING else None,
            payment_reference=payment_reference,
        )
        session.add(invoice)
        await session.commit()
        await session.refresh(invoice)
        return invoice


class TransactionFactory:
    """Factory for creating Transaction test instances."""

    _counter = 0

    @classmethod
    async def create(
        cls,
        session: AsyncSession,
        invoice: Invoice,
        external_payment_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.SUCCEEDED,
        amount: Optional[Decimal] = None,
        processed_at: Optional[datetime] = None,
    ) -> Transaction:
        """
        Create a transaction for an invoice.

        Note: Does not touch the invoice; pair with an InvoiceFactory status
        that keeps the ledger consistent unless the test needs otherwise.
        """
        cls._counter += 1
        transaction = Transaction(
            transaction_number=f"TXN-TEST-{cls._counter:05d}",
            external_payment_id=external_payment_id or f"pi_test_{cls._counter}",
            invoice_id=invoice.id,
            payer_id=invoice.payer_id,
            amount=amount if amount is not None else invoice.total_amount,
            currency=invoice.currency,
            status=status,
            processed_at=processed_at or utcnow(),
        )
        session.add(transaction)
        await session.commit()
        await session.refresh(transaction)
        return transaction


async def create_settled_invoice(
    session: AsyncSession,
    external_payment_id: str = "pi_settled",
    **invoice_kwargs: Any,
) -> Tuple[Invoice, Transaction]:
    """Create a paid invoice together with its succeeded transaction."""
    invoice = await InvoiceFactory.create(
        session,
        status=InvoiceStatus.PAID,
        payment_reference=external_payment_id,
        **invoice_kwargs,
    )
    transaction = await TransactionFactory.create(
        session,
        invoice,
        external_payment_id=external_payment_id,
    )
    return invoice, transaction


# ============================================================================
# Processor objects
# ============================================================================


def payment_intent(
    intent_id: str = "pi_123",
    amount: Decimal = Decimal("90.00"),
    status: str = "succeeded",
    currency: str = "usd",
    invoice_id: Optional[int] = None,
    payer_id: Optional[str] = "payer-1",
    client_secret: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a PaymentIntent as returned by the Stripe API."""
    metadata: Dict[str, str] = {}
    if invoice_id is not None:
        metadata["invoice_id"] = str(invoice_id)
    if payer_id is not None:
        metadata["payer_id"] = payer_id
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": to_minor_units(amount),
        "amount_received": to_minor_units(amount) if status == "succeeded" else 0,
        "currency": currency,
        "status": status,
        "client_secret": client_secret or f"{intent_id}_secret_abc",
        "metadata": metadata,
    }


def refund_object(
    refund_id: str = "re_123",
    amount: Decimal = Decimal("90.00"),
    payment_intent_id: str = "pi_123",
    status: str = "succeeded",
) -> Dict[str, Any]:
    """Build a Refund as returned by the Stripe API."""
    return {
        "id": refund_id,
        "object": "refund",
        "amount": to_minor_units(amount),
        "payment_intent": payment_intent_id,
        "status": status,
    }


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_123") -> Dict[str, Any]:
    """Wrap an object in a Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def charge_refunded_event(
    payment_intent_id: str = "pi_123",
    amount_refunded: Decimal = Decimal("90.00"),
    refund_id: Optional[str] = "re_123",
    event_id: str = "evt_refund",
) -> Dict[str, Any]:
    charge = {
        "id": "ch_123",
        "object": "charge",
        "payment_intent": payment_intent_id,
        "amount_refunded": to_minor_units(amount_refunded),
        "refunded": True,
        "refunds": {"data": [{"id": refund_id}] if refund_id else []},
    }
    return stripe_event("charge.refunded", charge, event_id=event_id)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """
    Build a Stripe-Signature header for a payload.

    HOW: v1 = HMAC-SHA256(secret, "{timestamp}.{payload}"), as Stripe signs.
    """
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_webhook(event: Dict[str, Any], secret: str = WEBHOOK_SECRET) -> Tuple[bytes, str]:
    """Serialize an event and sign it; returns (body, signature header)."""
    payload = json.dumps(event)
    return payload.encode("utf-8"), sign_payload(payload, secret)
