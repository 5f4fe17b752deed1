"""
Payment API endpoints.

WHAT: Open processor payment sessions and confirm settlement.

WHY: The client pays the processor directly, then calls
confirm-settlement. The server never trusts that call: settlement is
re-verified against the processor before anything is recorded.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.deps import get_notification_dispatcher, get_payment_gateway
from billing.db.session import get_db
from billing.schemas.payment import (
    PaymentSessionCreate,
    PaymentSessionResponse,
    SettlementConfirm,
    SettlementResponse,
    TransactionResponse,
)
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway
from billing.services.settlement_service import SettlementService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/create-payment-session",
    response_model=PaymentSessionResponse,
    summary="Create payment session",
)
async def create_payment_session(
    data: PaymentSessionCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentSessionResponse:
    """
    Open a processor payment session for a pending invoice.

    Raises:
        InvoiceNotFoundError, AuthorizationError, AlreadySettledError
        ProcessorUnavailableError: Processor down (503, retryable)
        ProcessorConfigError: Processor not configured (500)
    """
    service = SettlementService(db, gateway)
    invoice, session = await service.create_payment_session(data.invoice_id, data.payer_id)
    return PaymentSessionResponse(
        session_id=session.id,
        client_secret=session.client_secret,
        amount=session.amount,
        currency=session.currency,
        invoice_id=invoice.id,
    )


@router.post(
    "/confirm-settlement",
    response_model=SettlementResponse,
    summary="Confirm settlement",
)
async def confirm_settlement(
    data: SettlementConfirm,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> SettlementResponse:
    """
    Settle an invoice after the client reports a successful payment.

    WHY: Idempotent. Repeating the call, or racing the webhook, returns the
    same transaction with created=false.

    Raises:
        SettlementNotConfirmedError: Processor does not confirm (402)
        AmountMismatchError: Paid amount differs from invoice total (422)
        AlreadySettledError: Invoice settled by another payment (409)
    """
    service = SettlementService(db, gateway, dispatcher)
    result = await service.settle(data.session_id, data.invoice_id, data.payer_id)
    return SettlementResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        created=result.created,
    )
