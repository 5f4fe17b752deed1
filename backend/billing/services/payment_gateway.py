"""
Stripe payment gateway for invoice settlement.

WHAT: Adapter between the ledger and Stripe: payment sessions
(PaymentIntents), payment retrieval, refunds and webhook signature
verification.

WHY: The processor is untrusted, at-least-once and sometimes unavailable.
Keeping every Stripe call behind one class means:
1. Stripe errors are translated into our exception hierarchy in one place
2. Every call has a bounded timeout and runs off the event loop
3. Money crosses the boundary only as Decimal <-> minor units
4. Services receive an explicit instance and tests inject a fake

HOW: Uses the Stripe Python SDK's StripeClient (no module-level api_key),
called through asyncio.to_thread under asyncio.wait_for. Webhook payloads
are verified with stripe.WebhookSignature before being parsed.

Design decisions:
- PaymentIntents over Checkout Sessions: the client confirms in-page and
  then asks the server to settle, which the reconciler re-verifies
- Missing credentials surface as ProcessorConfigError on first use rather
  than at import, so the API can boot without Stripe configured
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

import stripe

from billing.core.config import Settings, settings
from billing.core.exceptions import (
    PaymentProcessorError,
    ProcessorConfigError,
    ProcessorUnavailableError,
    ValidationError,
    WebhookSignatureError,
)
from billing.models.invoice import Invoice

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ============================================================================
# Money conversion
# ============================================================================


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a Decimal amount to integer minor units (cents).

    WHY: Stripe amounts are integers. int(amount * 100) truncates, so
    rounding is explicit.
    """
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units (cents) back to a 2-place Decimal."""
    return (Decimal(int(amount)) / 100).quantize(CENT)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    # StripeObject raises KeyError for absent fields
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class PaymentSession:
    """
    Represents a Stripe PaymentIntent.

    WHAT: Processor view of one payment attempt for an invoice.
    """

    id: str
    """Stripe PaymentIntent ID (pi_xxx)."""

    status: str
    """Processor status (succeeded, processing, requires_payment_method, ...)."""

    amount: Decimal
    """Amount as a Decimal in major units."""

    currency: str
    """Currency code."""

    client_secret: Optional[str] = None
    """Secret the client uses to confirm the payment in-page."""

    metadata: Dict[str, str] = field(default_factory=dict)
    """invoice_id, payer_id and invoice_number tags."""

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass
class RefundResult:
    """Represents a Stripe Refund."""

    id: str
    """Stripe Refund ID (re_xxx)."""

    amount: Decimal
    """Refunded amount in major units."""

    status: str
    """Refund status (pending, succeeded, failed, ...)."""

    payment_id: Optional[str] = None
    """PaymentIntent the refund belongs to."""


# ============================================================================
# Gateway
# ============================================================================


class PaymentGateway:
    """
    Service for Stripe payment operations.

    WHAT: High-level, async interface for the processor calls the ledger
    needs.

    WHY: One explicit instance is created at app startup and injected into
    the services; nothing here reads global Stripe state.

    HOW: Blocking SDK calls run in a worker thread with a timeout. Stripe
    errors map to:
    - connection, rate limit, 5xx, timeout -> ProcessorUnavailableError
    - authentication, permission, no key -> ProcessorConfigError
    - anything else the processor rejects -> PaymentProcessorError
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 2,
        api_version: Optional[str] = None,
        webhook_tolerance_seconds: int = 300,
        client: Optional[Any] = None,
    ):
        """
        Initialize the gateway.

        Args:
            api_key: Stripe secret key (None disables payment operations)
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for every processor call
            max_network_retries: SDK-level retries for idempotent requests
            api_version: Pinned Stripe API version
            webhook_tolerance_seconds: Allowed webhook timestamp skew
            client: Pre-built StripeClient (tests inject a fake here)
        """
        self._api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.max_network_retries = max_network_retries
        self.api_version = api_version
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self._client = client

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PaymentGateway":
        """Build a gateway from application settings."""
        return cls(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=config.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=config.STRIPE_MAX_NETWORK_RETRIES,
            api_version=config.STRIPE_API_VERSION,
            webhook_tolerance_seconds=config.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )

    @property
    def client(self) -> Any:
        """
        Lazily build the StripeClient.

        Raises:
            ProcessorConfigError: If no secret key is configured
        """
        if self._client is None:
            if not self._api_key:
                raise ProcessorConfigError(message="Stripe secret key is not configured")
            self._client = stripe.StripeClient(
                self._api_key,
                stripe_version=self.api_version,
                max_network_retries=self.max_network_retries,
                http_client=stripe.RequestsClient(timeout=self.timeout_seconds),
            )
        return self._client

    async def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """
        Run a blocking SDK call off the event loop with a bounded timeout.

        Args:
            operation: Short name used in logs and error context
            func: Bound StripeClient service method
            **kwargs: Arguments for the call

        Returns:
            The raw Stripe object

        Raises:
            ProcessorUnavailableError, ProcessorConfigError, PaymentProcessorError
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Stripe {operation} timed out after {self.timeout_seconds}s",
                extra={"operation": operation},
            )
            raise ProcessorUnavailableError(
                message="Payment processor timed out",
                operation=operation,
                timed_out=True,
            )
        except (stripe.AuthenticationError, stripe.PermissionError) as e:
            raise ProcessorConfigError(
                message="Payment processor rejected our credentials",
                operation=operation,
                stripe_error=str(e),
            )
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            logger.warning(
                f"Stripe {operation} unavailable: {e}",
                extra={"operation": operation},
            )
            raise ProcessorUnavailableError(
                operation=operation,
                stripe_error=str(e),
            )
        except stripe.StripeError as e:
            logger.error(
                f"Stripe {operation} error: {e}",
                extra={"operation": operation},
            )
            raise PaymentProcessorError(
                operation=operation,
                stripe_error=str(e),
            )

    @staticmethod
    def _to_session(intent: Any) -> PaymentSession:
        metadata = _get(intent, "metadata", {}) or {}
        return PaymentSession(
            id=intent["id"],
            status=intent["status"],
            amount=from_minor_units(intent["amount"]),
            currency=_get(intent, "currency", settings.DEFAULT_CURRENCY),
            client_secret=_get(intent, "client_secret"),
            metadata={str(k): str(v) for k, v in dict(metadata).items()},
        )

    # ========================================================================
    # Payment sessions
    # ========================================================================

    async def create_payment_session(self, invoice: Invoice) -> PaymentSession:
        """
        Create a PaymentIntent for an invoice's total.

        WHAT: Opens a processor payment session the client confirms in-page.

        WHY: Metadata tags the session with invoice and payer ids. The
        reconciler checks these tags so a payment for one invoice can
        never settle another.

        Args:
            invoice: Pending invoice to collect

        Returns:
            PaymentSession including the client_secret

        Raises:
            ValidationError: If the invoice total is not positive
            ProcessorUnavailableError, ProcessorConfigError, PaymentProcessorError
        """
        if invoice.total_amount <= 0:
            raise ValidationError(
                message="Invoice total must be greater than zero",
                invoice_id=invoice.id,
            )

        amount_cents = to_minor_units(invoice.total_amount)
        params = {
            "amount": amount_cents,
            "currency": invoice.currency,
            "description": f"Invoice {invoice.invoice_number}",
            "receipt_email": invoice.payer_email,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "invoice_id": str(invoice.id),
                "payer_id": invoice.payer_id,
                "invoice_number": invoice.invoice_number,
            },
        }

        intent = await self._call(
            "create_payment_session",
            self.client.payment_intents.create,
            params=params,
        )
        session = self._to_session(intent)

        logger.info(
            f"Created payment session {session.id} for invoice {invoice.id}",
            extra={
                "payment_id": session.id,
                "invoice_id": invoice.id,
                "amount_cents": amount_cents,
            },
        )
        return session

    async def retrieve_session(self, session_id: str) -> PaymentSession:
        """
        Retrieve a PaymentIntent by ID.

        WHY: The authoritative status and amount used to verify a client's
        claim of success.
        """
        intent = await self._call(
            "retrieve_session",
            self.client.payment_intents.retrieve,
            intent=session_id,
        )
        return self._to_session(intent)

    # ========================================================================
    # Refunds
    # ========================================================================

    async def create_refund(
        self,
        external_payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a PaymentIntent, fully or partially.

        Args:
            external_payment_id: PaymentIntent to refund
            amount: Partial amount (None refunds the full charge)
            reason: Free-text reason, stored as refund metadata
            idempotency_key: Key that makes retries of this refund safe

        Returns:
            RefundResult with the processor refund id and amount
        """
        params: Dict[str, Any] = {"payment_intent": external_payment_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            params["metadata"] = {"reason": reason[:500]}

        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        refund = await self._call(
            "create_refund",
            self.client.refunds.create,
            params=params,
            options=options,
        )
        result = RefundResult(
            id=refund["id"],
            amount=from_minor_units(refund["amount"]),
            status=_get(refund, "status", "pending"),
            payment_id=_get(refund, "payment_intent", external_payment_id),
        )

        logger.info(
            f"Created refund {result.id} for payment {external_payment_id}",
            extra={
                "refund_id": result.id,
                "payment_id": external_payment_id,
                "amount": str(result.amount),
            },
        )
        return result

    # ========================================================================
    # Webhook Handling
    # ========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
        webhook_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify a Stripe webhook signature and parse the event.

        WHAT: Validates that the webhook came from Stripe.

        WHY: Security critical (OWASP A02). An unverified payload is never
        parsed, let alone acted upon. A missing signing secret is a
        configuration failure, never a reason to trust the body.

        HOW: HMAC-SHA256 check with timestamp tolerance via
        stripe.WebhookSignature, then JSON decoding.

        Args:
            payload: Raw request body bytes
            signature: Stripe-Signature header value
            webhook_secret: Signing secret (defaults to the configured one)

        Returns:
            The decoded event as a plain dict

        Raises:
            ProcessorConfigError: If no signing secret is configured
            WebhookSignatureError: If the signature or payload is invalid
        """
        secret = webhook_secret or self.webhook_secret
        if not secret:
            raise ProcessorConfigError(
                message="Webhook signing secret is not configured",
                status_code=400,
            )
        if not signature:
            raise WebhookSignatureError(message="Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookSignatureError(message="Webhook payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                secret,
                self.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError()

        try:
            event = json.loads(body)
        except ValueError:
            raise WebhookSignatureError(message="Webhook payload is not valid JSON")

        if not isinstance(event, dict) or "type" not in event:
            raise WebhookSignatureError(message="Webhook payload is not a Stripe event")

        logger.info(
            f"Verified webhook event {event.get('id')} type {event['type']}",
            extra={"event_id": event.get("id"), "event_type": event["type"]},
        )
        return event
