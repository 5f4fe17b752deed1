"""
JSON error responses for the billing API.

WHAT: Maps ledger, processor and request errors onto one response body:
error, code, message, status_code, retryable, details.

WHY: Payers' clients decide whether to retry a confirmation from the
retryable flag alone, so every failure path, including request validation
and unexpected crashes, must carry it.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing.core.exceptions import AppException, ProcessorConfigError

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    error: str,
    code: str,
    message: str,
    retryable: bool = False,
    details: Optional[Any] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "code": code,
            "message": message,
            "status_code": status_code,
            "retryable": retryable,
            "details": details,
        },
    )


def _request_id(request: Request) -> Optional[str]:
    # request.state outlives the middleware's context variable.
    context = getattr(request.state, "context", None)
    return context.request_id if context else None


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Render a billing error with its own status and retryable flag.

    A misconfigured processor key is logged at CRITICAL: every settlement
    and refund fails until an operator fixes it. Other 5xx errors (processor
    outages) are logged at ERROR; 4xx ledger conflicts are expected and not
    logged here.
    """
    log_extra = {"path": request.url.path, "code": exc.code, "request_id": _request_id(request)}
    if isinstance(exc, ProcessorConfigError):
        logger.critical(f"Payment processor configuration error: {exc.message}", extra=log_extra)
    elif exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=log_extra)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies and query parameters as VALIDATION_ERROR with per-field errors."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return _error_response(
        400,
        "ValidationError",
        "VALIDATION_ERROR",
        "Request validation failed",
        details={"errors": errors},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Unknown routes and wrong methods.
    return _error_response(exc.status_code, "HTTPException", "HTTP_ERROR", str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Render an unexpected failure as a retryable 500.

    A 500 on the webhook endpoint makes the processor redeliver the event,
    and settlement is idempotent, so retrying is safe. The request ID is
    returned so a payer can quote it to support.
    """
    request_id = _request_id(request)
    logger.exception(
        f"Unhandled error on {request.method} {request.url.path}",
        exc_info=exc,
        extra={"request_id": request_id},
    )
    return _error_response(
        500,
        "InternalServerError",
        "INTERNAL_ERROR",
        "An unexpected error occurred",
        retryable=True,
        details={"request_id": request_id} if request_id else None,
    )
