"""
Payment, transaction, refund and webhook schemas.

WHAT: Pydantic schemas for the settlement surface of the API.

WHY: Request bodies carry only identifiers. Amounts are always taken from
the ledger or from the payment processor, never from the client.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing.models.transaction import TransactionStatus


# ============================================================================
# Payment sessions
# ============================================================================


class PaymentSessionCreate(BaseModel):
    """Request a processor payment session for a pending invoice."""

    invoice_id: int = Field(..., gt=0)
    payer_id: str = Field(..., min_length=1, max_length=64)


class PaymentSessionResponse(BaseModel):
    """
    Processor session handed to the client.

    WHY: The client_secret lets the browser confirm the payment directly
    with the processor; the server never sees card data.
    """

    session_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    invoice_id: int


class SettlementConfirm(BaseModel):
    """Client assertion that a payment session succeeded."""

    session_id: str = Field(..., min_length=1, max_length=255)
    invoice_id: int = Field(..., gt=0)
    payer_id: str = Field(..., min_length=1, max_length=64)


# ============================================================================
# Transactions
# ============================================================================


class TransactionResponse(BaseModel):
    """Schema for transaction response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_number: str
    external_payment_id: str
    invoice_id: int
    payer_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    processed_at: datetime
    refunded_amount: Optional[Decimal] = None
    refund_reference: Optional[str] = None
    refunded_at: Optional[datetime] = None


class SettlementResponse(BaseModel):
    """
    Result of a settlement call.

    WHY: `created` is False when the payment had already been recorded,
    which is a success, not an error.
    """

    transaction: TransactionResponse
    created: bool


class TransactionListResponse(BaseModel):
    items: List[TransactionResponse]
    total: int


# ============================================================================
# Refunds
# ============================================================================


class RefundCreate(BaseModel):
    """
    Schema for requesting a refund.

    Note: amount omitted means a full refund.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    transaction_id: int = Field(..., gt=0)
    amount: Optional[Decimal] = Field(default=None, description="Refund amount (full if omitted)")
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundResponse(BaseModel):
    refund_id: str
    transaction_id: int
    invoice_id: int
    amount: Decimal
    status: str


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    """
    Acknowledgement returned to the payment processor.

    WHY: Any 2xx stops redelivery, so the outcome is reported for
    observability only.
    """

    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str
