"""Data Access Objects for the billing ledger."""

from billing.dao.base import BaseDAO
from billing.dao.invoice import InvoiceDAO
from billing.dao.transaction import TransactionDAO

__all__ = ["BaseDAO", "InvoiceDAO", "TransactionDAO"]
