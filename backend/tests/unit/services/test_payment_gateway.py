"""
Unit tests for PaymentGateway.

WHAT: Tests the Stripe adapter against a mocked StripeClient.

WHY: Ensures that:
1. Money crosses the boundary as exact minor units
2. Every Stripe failure maps to the right exception family
3. Slow calls are cut off and reported as retryable
4. Webhook signatures are verified with real HMAC before parsing

HOW: The client is a MagicMock; signatures are computed with hmac exactly
as Stripe computes them.
"""

import json
import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import stripe

from billing.core.exceptions import (
    PaymentProcessorError,
    ProcessorConfigError,
    ProcessorUnavailableError,
    ValidationError,
    WebhookSignatureError,
)
from billing.models.invoice import Invoice
from billing.services.payment_gateway import (
    PaymentGateway,
    from_minor_units,
    to_minor_units,
)
from tests.factories import WEBHOOK_SECRET, payment_intent, refund_object, sign_payload


def make_invoice(**overrides) -> Invoice:
    values = dict(
        id=12,
        invoice_number="INV-2026-0012",
        payer_id="payer-1",
        payer_email="payer@example.com",
        total_amount=Decimal("90.00"),
        currency="usd",
    )
    values.update(overrides)
    return Invoice(**values)


class TestMoneyConversion:
    """Decimal <-> minor units."""

    @pytest.mark.parametrize(
        "amount,cents",
        [
            (Decimal("90.00"), 9000),
            (Decimal("0.01"), 1),
            (Decimal("19.99"), 1999),
            (Decimal("10.005"), 1001),
        ],
    )
    def test_to_minor_units(self, amount, cents):
        """Test conversion rounds half up instead of truncating."""
        assert to_minor_units(amount) == cents

    def test_from_minor_units(self):
        """Test conversion back to a two-place Decimal."""
        assert from_minor_units(4500) == Decimal("45.00")
        assert str(from_minor_units(1)) == "0.01"


class TestPaymentSessions:
    """Tests for PaymentIntent creation and retrieval."""

    @pytest.mark.asyncio
    async def test_create_payment_session(self, gateway, stripe_client):
        """Test the intent carries amount, currency and ledger metadata."""
        stripe_client.payment_intents.create.return_value = payment_intent(
            "pi_new", status="requires_payment_method", invoice_id=12
        )

        session = await gateway.create_payment_session(make_invoice())

        params = stripe_client.payment_intents.create.call_args.kwargs["params"]
        assert params["amount"] == 9000
        assert params["currency"] == "usd"
        assert params["metadata"] == {
            "invoice_id": "12",
            "payer_id": "payer-1",
            "invoice_number": "INV-2026-0012",
        }
        assert session.id == "pi_new"
        assert session.client_secret == "pi_new_secret_abc"
        assert session.amount == Decimal("90.00")
        assert session.succeeded is False

    @pytest.mark.asyncio
    async def test_create_payment_session_rejects_zero_total(self, gateway, stripe_client):
        """Test a non-positive total never reaches Stripe."""
        with pytest.raises(ValidationError):
            await gateway.create_payment_session(make_invoice(total_amount=Decimal("0.00")))
        stripe_client.payment_intents.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_retrieve_session(self, gateway, stripe_client):
        """Test retrieval maps status, amount and metadata."""
        stripe_client.payment_intents.retrieve.return_value = payment_intent("pi_123", invoice_id=12)

        session = await gateway.retrieve_session("pi_123")

        stripe_client.payment_intents.retrieve.assert_called_once_with(intent="pi_123")
        assert session.succeeded is True
        assert session.amount == Decimal("90.00")
        assert session.metadata["invoice_id"] == "12"


class TestRefunds:
    """Tests for refund creation."""

    @pytest.mark.asyncio
    async def test_partial_refund(self, gateway, stripe_client):
        """Test partial amount, reason and idempotency key are forwarded."""
        stripe_client.refunds.create.return_value = refund_object("re_1", Decimal("45.00"))

        result = await gateway.create_refund(
            "pi_123",
            amount=Decimal("45.00"),
            reason="Course cancelled",
            idempotency_key="refund:pi_123",
        )

        call = stripe_client.refunds.create.call_args.kwargs
        assert call["params"] == {
            "payment_intent": "pi_123",
            "amount": 4500,
            "metadata": {"reason": "Course cancelled"},
        }
        assert call["options"] == {"idempotency_key": "refund:pi_123"}
        assert result.id == "re_1"
        assert result.amount == Decimal("45.00")

    @pytest.mark.asyncio
    async def test_full_refund_omits_amount(self, gateway, stripe_client):
        """Test a full refund lets Stripe refund the whole charge."""
        stripe_client.refunds.create.return_value = refund_object("re_2", Decimal("90.00"))

        await gateway.create_refund("pi_123")

        params = stripe_client.refunds.create.call_args.kwargs["params"]
        assert "amount" not in params


class TestErrorMapping:
    """Stripe errors map to our exception hierarchy."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            stripe.APIConnectionError("connection reset"),
            stripe.RateLimitError("slow down"),
            stripe.APIError("internal"),
        ],
    )
    async def test_unavailable(self, gateway, stripe_client, error):
        """Test transient failures are retryable."""
        stripe_client.payment_intents.retrieve.side_effect = error

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await gateway.retrieve_session("pi_123")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_authentication_is_config_error(self, gateway, stripe_client):
        """Test rejected credentials are an operator problem."""
        stripe_client.payment_intents.retrieve.side_effect = stripe.AuthenticationError("bad key")

        with pytest.raises(ProcessorConfigError):
            await gateway.retrieve_session("pi_123")

    @pytest.mark.asyncio
    async def test_invalid_request_is_processor_error(self, gateway, stripe_client):
        """Test other Stripe rejections are non-retryable processor errors."""
        stripe_client.payment_intents.retrieve.side_effect = stripe.InvalidRequestError(
            "No such payment_intent", "intent"
        )

        with pytest.raises(PaymentProcessorError) as exc_info:
            await gateway.retrieve_session("pi_missing")

        assert not isinstance(exc_info.value, ProcessorUnavailableError)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout(self, stripe_client):
        """Test a hung call is cut off at the configured timeout."""

        def slow_retrieve(**kwargs):
            time.sleep(0.5)
            return payment_intent()

        stripe_client.payment_intents.retrieve.side_effect = slow_retrieve
        gateway = PaymentGateway(api_key="sk_test", timeout_seconds=0.05, client=stripe_client)

        with pytest.raises(ProcessorUnavailableError) as exc_info:
            await gateway.retrieve_session("pi_123")

        assert exc_info.value.context["timed_out"] is True

    def test_missing_api_key(self):
        """Test a gateway without a key refuses to build a client."""
        with pytest.raises(ProcessorConfigError):
            PaymentGateway(api_key=None).client

    def test_builds_stripe_client(self):
        """Test the real client is created lazily from the key."""
        gateway = PaymentGateway(api_key="sk_test_123")
        assert isinstance(gateway.client, stripe.StripeClient)


class TestWebhookVerification:
    """Tests for verify_webhook_signature."""

    def _payload(self) -> str:
        return json.dumps({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}})

    def test_valid_signature(self, gateway):
        """Test a correctly signed payload is parsed."""
        payload = self._payload()

        event = gateway.verify_webhook_signature(payload.encode(), sign_payload(payload))

        assert event["id"] == "evt_1"
        assert event["type"] == "payment_intent.succeeded"

    def test_wrong_secret(self, gateway):
        """Test a payload signed with another secret is rejected."""
        payload = self._payload()

        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook_signature(payload.encode(), sign_payload(payload, "whsec_other"))

    def test_tampered_payload(self, gateway):
        """Test a modified body no longer matches its signature."""
        payload = self._payload()
        signature = sign_payload(payload)

        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook_signature(payload.replace("evt_1", "evt_2").encode(), signature)

    def test_stale_timestamp(self, gateway):
        """Test replayed deliveries outside the tolerance are rejected."""
        payload = self._payload()
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook_signature(payload.encode(), signature)

    def test_missing_header(self, gateway):
        """Test a delivery without a signature header is rejected."""
        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook_signature(self._payload().encode(), None)

    def test_missing_secret_is_config_error(self):
        """Test an unconfigured secret never means trusting the body."""
        gateway = PaymentGateway(api_key="sk_test", webhook_secret=None, client=MagicMock())
        payload = self._payload()

        with pytest.raises(ProcessorConfigError) as exc_info:
            gateway.verify_webhook_signature(payload.encode(), sign_payload(payload))

        assert exc_info.value.status_code == 400

    def test_signed_non_event_is_rejected(self, gateway):
        """Test a signed body that is not a Stripe event is rejected."""
        payload = json.dumps({"hello": "world"})

        with pytest.raises(WebhookSignatureError):
            gateway.verify_webhook_signature(payload.encode(), sign_payload(payload, WEBHOOK_SECRET))
