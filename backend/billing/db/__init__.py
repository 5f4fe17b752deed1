"""Database package"""

from billing.db.session import AsyncSessionLocal, engine, get_db
from billing.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db"]
