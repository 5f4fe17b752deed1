"""
Refund API endpoints.

WHAT: Issue a full or partial refund for a settled transaction.

WHY: Refunds go through the processor first; the ledger moves to
refunded only once the processor has accepted the refund.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.deps import get_notification_dispatcher, get_payment_gateway
from billing.db.session import get_db
from billing.schemas.payment import RefundCreate, RefundResponse
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway
from billing.services.refund_service import RefundService

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.post(
    "",
    response_model=RefundResponse,
    summary="Refund transaction",
)
async def create_refund(
    data: RefundCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> RefundResponse:
    """
    Refund a transaction.

    Raises:
        TransactionNotFoundError: Unknown transaction (404)
        AlreadyRefundedError: Already refunded (409)
        ValidationError: Amount not in (0, transaction amount] (400)
        ProcessorUnavailableError: Processor down (503, retryable)
    """
    service = RefundService(db, gateway, dispatcher)
    outcome = await service.refund(data.transaction_id, amount=data.amount, reason=data.reason)
    return RefundResponse(
        refund_id=outcome.refund.id,
        transaction_id=outcome.transaction.id,
        invoice_id=outcome.transaction.invoice_id,
        amount=outcome.refund.amount,
        status=outcome.refund.status,
    )
