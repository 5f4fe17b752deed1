"""
Middleware package.

WHY: Request correlation applies to every endpoint, webhooks included.
"""

from billing.middleware.request_context import (
    RequestContext,
    RequestContextMiddleware,
    RequestIdLogFilter,
    get_request_context,
)

__all__ = [
    "RequestContext",
    "RequestContextMiddleware",
    "RequestIdLogFilter",
    "get_request_context",
]
