"""
Request context middleware for log correlation.

WHAT: Assigns every request an ID, exposes it through a ContextVar and
stamps it on log records.

WHY: One settlement produces log lines in the router, the settlement
service, the gateway and the DAO layer. A shared request_id ties them
together, and the X-Request-ID response header lets a payer's support
ticket be matched to those lines.

HOW: BaseHTTPMiddleware stores a RequestContext in request.state and in a
ContextVar; RequestIdLogFilter copies the ID onto every LogRecord.
"""

import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class RequestContext:
    """
    Container for request-scoped context data.

    Fields:
    - request_id: Unique identifier for the request (for log correlation)
    - path: Request path
    - method: HTTP method
    """

    request_id: str
    path: str
    method: str


# WHY: ContextVar gives each concurrent request its own isolated context
_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> Optional[RequestContext]:
    """
    Get the current request context.

    Returns:
        RequestContext if within a request, None otherwise (e.g. scheduler jobs)
    """
    return _request_context.get()


class RequestIdLogFilter(logging.Filter):
    """
    Logging filter that adds request_id to every record.

    HOW: Attach to a handler; records outside a request get "-".
    """

    def filter(self, record: logging.LogRecord) -> bool:
        # An explicit extra={"request_id": ...} wins.
        if getattr(record, "request_id", None):
            return True
        context = _request_context.get()
        record.request_id = context.request_id if context else "-"
        return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures and stores request context.

    Note: An incoming X-Request-ID (e.g. from a load balancer) is reused so
    IDs stay stable across hops.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        context = RequestContext(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )
        request.state.context = context
        token = _request_context.set(context)

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            _request_context.reset(token)
