"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from billing.models.base import Base, TimestampMixin, utcnow
from billing.models.invoice import Invoice, InvoiceStatus
from billing.models.transaction import Transaction, TransactionStatus

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "Invoice",
    "InvoiceStatus",
    "Transaction",
    "TransactionStatus",
]
