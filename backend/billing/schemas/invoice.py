"""
Invoice schemas for API request/response validation.

WHAT: Pydantic schemas for invoice data validation.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

HOW: Uses Pydantic v2 with Field constraints and model_config. Amount
rules (amount > 0, tax >= 0) are enforced by InvoiceService so that
non-HTTP callers get the same ValidationError.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from billing.models.invoice import InvoiceStatus


# ============================================================================
# Request Schemas
# ============================================================================


class PayerInfo(BaseModel):
    """
    Payer contact snapshot.

    WHY: Stored on the invoice so receipts never need a user lookup.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    payer_id: str = Field(..., min_length=1, max_length=64, description="Paying user reference")
    email: EmailStr = Field(..., description="Payer contact email")
    name: Optional[str] = Field(default=None, max_length=255, description="Payer display name")


class BillableItem(BaseModel):
    """
    Something that can be billed (e.g. an enrollment).

    Note: amount and tax_amount are validated by the service layer.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    reference: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Billed item reference (e.g. enrollment id)",
    )
    amount: Decimal = Field(..., description="Base amount")
    tax_amount: Decimal = Field(default=Decimal("0.00"), description="Tax amount")
    currency: Optional[str] = Field(
        default=None,
        min_length=3,
        max_length=3,
        description="ISO currency code (defaults to configured currency)",
    )
    description: str = Field(default="", max_length=5000, description="Line description")


class InvoiceCreate(BaseModel):
    """Schema for creating an invoice."""

    payer: PayerInfo
    item: BillableItem


# ============================================================================
# Response Schemas
# ============================================================================


class InvoiceResponse(BaseModel):
    """
    Schema for invoice response.

    WHY: Returns the full ledger view of an invoice, including settlement
    time and latest payment reference.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    status: InvoiceStatus
    payer_id: str
    payer_email: str
    payer_name: Optional[str] = None
    billable_item_ref: Optional[str] = None
    amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    description: str
    issue_date: date
    due_date: Optional[date] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class InvoiceListResponse(BaseModel):
    """Schema for a payer's invoice list."""

    items: List[InvoiceResponse]
    total: int
