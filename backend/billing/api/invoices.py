"""
Invoice API endpoints.

WHAT: Create invoices and read them back.

WHY: Invoices are created by the enrollment flow (the billable item) and
read by payers. There is no update endpoint: amounts are immutable and
status changes only through settlement and refunds.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.session import get_db
from billing.schemas.invoice import InvoiceCreate, InvoiceListResponse, InvoiceResponse
from billing.services.invoice_service import InvoiceService

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice",
)
async def create_invoice(
    data: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """
    Create a pending invoice for a billable item.

    Raises:
        ValidationError: If amount <= 0 or tax < 0
    """
    invoice = await InvoiceService(db).create_invoice(data.payer, data.item)
    return InvoiceResponse.model_validate(invoice)


@router.get(
    "",
    response_model=InvoiceListResponse,
    summary="List a payer's invoices",
)
async def list_invoices(
    payer_id: str = Query(..., min_length=1, max_length=64),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> InvoiceListResponse:
    invoices, total = await InvoiceService(db).list_payer_invoices(payer_id, skip=skip, limit=limit)
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(i) for i in invoices],
        total=total,
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
)
async def get_invoice(
    invoice_id: int,
    payer_id: Optional[str] = Query(None, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """
    Get an invoice by ID.

    Note: When payer_id is given, another payer's invoice reads as not found.
    """
    invoice = await InvoiceService(db).get_payer_invoice(invoice_id, payer_id)
    return InvoiceResponse.model_validate(invoice)
