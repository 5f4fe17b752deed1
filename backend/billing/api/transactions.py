"""
Transaction API endpoints.

WHAT: Read-only access to the ledger's transactions.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.exceptions import TransactionNotFoundError, ValidationError
from billing.dao.transaction import TransactionDAO
from billing.db.session import get_db
from billing.models.transaction import TransactionStatus
from billing.schemas.payment import TransactionListResponse, TransactionResponse

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Ledger timestamps are naive UTC; offsets in the query are converted.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get(
    "",
    response_model=TransactionListResponse,
    summary="List transactions",
)
async def list_transactions(
    payer_id: Optional[str] = Query(None, max_length=64),
    status: Optional[TransactionStatus] = Query(None),
    start_date: Optional[datetime] = Query(None, description="Processed at or after"),
    end_date: Optional[datetime] = Query(None, description="Processed at or before"),
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> TransactionListResponse:
    """
    List transactions, newest first.

    Note: Without payer_id this is the full ledger view. search matches the
    transaction number, the payment id and the settled invoice's number,
    description and payer.
    """
    start_date, end_date = _naive_utc(start_date), _naive_utc(end_date)
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            message="start_date must not be after end_date",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

    filters = {
        "payer_id": payer_id,
        "status": status,
        "start_date": start_date,
        "end_date": end_date,
        "search": search,
    }
    dao = TransactionDAO(db)
    transactions = await dao.list_transactions(**filters, skip=skip, limit=limit)
    total = await dao.count_transactions(**filters)
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
    )


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction",
)
async def get_transaction(
    transaction_id: int,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    transaction = await TransactionDAO(db).get_by_id(transaction_id)
    if transaction is None:
        raise TransactionNotFoundError(transaction_id=transaction_id)
    return TransactionResponse.model_validate(transaction)
