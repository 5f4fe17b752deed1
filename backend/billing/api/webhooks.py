"""
Webhook endpoints.

WHAT: Receives Stripe events.

WHY: No authentication: the Stripe-Signature header is the credential
(OWASP A02). Status codes drive Stripe's retry behaviour:
- 200: handled or deliberately dropped, do not resend
- 400: signature invalid or signing secret missing
- 500: unexpected failure, resend later
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.deps import get_notification_dispatcher, get_payment_gateway
from billing.db.session import get_db
from billing.schemas.payment import WebhookAck
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway
from billing.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAck,
    summary="Stripe webhook",
)
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WebhookAck:
    """
    Handle a Stripe webhook delivery.

    Raises:
        WebhookSignatureError: Invalid signature (400)
        ProcessorConfigError: Signing secret not configured (400)
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    result = await WebhookService(db, gateway, dispatcher).handle(payload, signature)
    return WebhookAck(
        event_id=result.event_id,
        event_type=result.event_type,
        outcome=result.outcome.value,
    )
