"""
Integration tests for payment endpoints.

WHAT: Payment sessions and client-confirmed settlement over HTTP.

WHY: The confirm endpoint is the untrusted entry point of settlement.
These tests pin the status codes clients rely on:
- 200 with created=true, then created=false on repeat
- 402 when the processor does not confirm (retryable flag set on outages)
- 409 when another payment already settled the invoice
- 422 on amount mismatch
"""

from decimal import Decimal

import pytest
import stripe

from billing.services.email import MockEmailProvider
from tests.factories import InvoiceFactory, create_settled_invoice, payment_intent

API = "/api/payments"


class TestCreatePaymentSession:
    """Tests for POST /api/payments/create-payment-session."""

    @pytest.mark.asyncio
    async def test_create(self, client, db_session, stripe_client):
        """Test a session is returned with its client secret."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.create.return_value = payment_intent(
            "pi_new", status="requires_payment_method", invoice_id=invoice.id
        )

        response = await client.post(
            f"{API}/create-payment-session",
            json={"invoice_id": invoice.id, "payer_id": "payer-1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "pi_new"
        assert data["client_secret"] == "pi_new_secret_abc"
        assert Decimal(data["amount"]) == Decimal("90.00")
        assert data["invoice_id"] == invoice.id

    @pytest.mark.asyncio
    async def test_processor_unavailable(self, client, db_session, stripe_client):
        """Test a processor outage is a retryable 503."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.create.side_effect = stripe.APIConnectionError("down")

        response = await client.post(
            f"{API}/create-payment-session",
            json={"invoice_id": invoice.id, "payer_id": "payer-1"},
        )

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_already_settled(self, client, db_session):
        """Test no session is opened for a paid invoice."""
        invoice, _ = await create_settled_invoice(db_session)

        response = await client.post(
            f"{API}/create-payment-session",
            json={"invoice_id": invoice.id, "payer_id": "payer-1"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "ALREADY_SETTLED"


class TestConfirmSettlement:
    """Tests for POST /api/payments/confirm-settlement."""

    async def _confirm(self, client, invoice_id, session_id="pi_123", payer_id="payer-1"):
        return await client.post(
            f"{API}/confirm-settlement",
            json={"session_id": session_id, "invoice_id": invoice_id, "payer_id": payer_id},
        )

    @pytest.mark.asyncio
    async def test_settles_once(self, client, db_session, stripe_client, dispatcher):
        """Test confirm twice: first creates, second returns the same transaction."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.retrieve.return_value = payment_intent(
            "pi_123", invoice_id=invoice.id
        )

        first = await self._confirm(client, invoice.id)
        second = await self._confirm(client, invoice.id)

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["transaction"]["id"] == first.json()["transaction"]["id"]

        invoice_response = await client.get(f"/api/invoices/{invoice.id}")
        assert invoice_response.json()["status"] == "paid"

        await dispatcher.drain()
        assert len(MockEmailProvider.sent_emails) == 1

    @pytest.mark.asyncio
    async def test_not_confirmed(self, client, db_session, stripe_client):
        """Test an unfinished payment is a 402 and leaves the invoice pending."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.retrieve.return_value = payment_intent(
            "pi_123", status="requires_action", invoice_id=invoice.id
        )

        response = await self._confirm(client, invoice.id)

        assert response.status_code == 402
        assert response.json()["code"] == "SETTLEMENT_NOT_CONFIRMED"
        assert response.json()["retryable"] is False

    @pytest.mark.asyncio
    async def test_processor_outage_is_retryable(self, client, db_session, stripe_client):
        """Test an outage during confirmation tells the client to retry."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.retrieve.side_effect = stripe.APIConnectionError("down")

        response = await self._confirm(client, invoice.id)

        assert response.status_code == 402
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, client, db_session, stripe_client):
        """Test an underpayment is a 422."""
        invoice = await InvoiceFactory.create(db_session)
        stripe_client.payment_intents.retrieve.return_value = payment_intent(
            "pi_123", amount=Decimal("45.00"), invoice_id=invoice.id
        )

        response = await self._confirm(client, invoice.id)

        assert response.status_code == 422
        assert response.json()["code"] == "AMOUNT_MISMATCH"

    @pytest.mark.asyncio
    async def test_already_settled_by_other_payment(self, client, db_session):
        """Test a different payment for a paid invoice is a 409."""
        invoice, _ = await create_settled_invoice(db_session, external_payment_id="pi_first")

        response = await self._confirm(client, invoice.id, session_id="pi_second")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_wrong_payer(self, client, db_session):
        """Test a payer cannot settle someone else's invoice."""
        invoice = await InvoiceFactory.create(db_session, payer_id="payer-1")

        response = await self._confirm(client, invoice.id, payer_id="payer-2")

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_body(self, client):
        """Test a missing session id is a 400."""
        response = await client.post(f"{API}/confirm-settlement", json={"invoice_id": 1, "payer_id": "p"})

        assert response.status_code == 400
