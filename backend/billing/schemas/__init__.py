"""Pydantic schemas for API request/response validation."""

from billing.schemas.invoice import (
    BillableItem,
    InvoiceCreate,
    InvoiceListResponse,
    InvoiceResponse,
    PayerInfo,
)
from billing.schemas.payment import (
    PaymentSessionCreate,
    PaymentSessionResponse,
    RefundCreate,
    RefundResponse,
    SettlementConfirm,
    SettlementResponse,
    TransactionListResponse,
    TransactionResponse,
    WebhookAck,
)

__all__ = [
    "BillableItem",
    "InvoiceCreate",
    "InvoiceListResponse",
    "InvoiceResponse",
    "PayerInfo",
    "PaymentSessionCreate",
    "PaymentSessionResponse",
    "RefundCreate",
    "RefundResponse",
    "SettlementConfirm",
    "SettlementResponse",
    "TransactionListResponse",
    "TransactionResponse",
    "WebhookAck",
]
