"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Stable machine-readable error codes for clients
4. A retryable flag so callers know when a retry is safe
5. No sensitive data leaks in error messages

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            retryable: Whether the caller may safely retry (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "client_secret"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Validation & Access Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class AuthorizationError(AppException):
    """
    Raised when a payer acts on a ledger record that is not theirs.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    code = "FORBIDDEN"
    default_message = "You do not have permission to perform this action"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class InvoiceNotFoundError(ResourceNotFoundError):
    default_message = "Invoice not found"


class TransactionNotFoundError(ResourceNotFoundError):
    default_message = "Transaction not found"


# ============================================================================
# Ledger State Exceptions
# ============================================================================


class InvalidStateTransitionError(AppException):
    """
    Raised when a ledger record is asked to move to an illegal state.

    WHY: Invoices only move pending -> paid -> refunded and transactions only
    succeeded -> refunded. Anything else is a conflict with current state.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    code = "INVALID_STATE"
    default_message = "Invalid state transition"


class AlreadySettledError(InvalidStateTransitionError):
    """
    Raised when an invoice is already settled by a different payment.

    WHY: Prevents double-charging the same invoice from two payment attempts.
    """

    code = "ALREADY_SETTLED"
    default_message = "Invoice is already settled"


class AlreadyRefundedError(InvalidStateTransitionError):
    """Raised when a refund is requested for an already refunded transaction."""

    code = "ALREADY_REFUNDED"
    default_message = "Transaction is already refunded"


class AmountMismatchError(AppException):
    """
    Raised when the processor-confirmed amount differs from the invoice total.

    WHY: A partial or excess payment must never be recorded as full settlement.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    code = "AMOUNT_MISMATCH"
    default_message = "Payment amount does not match invoice total"


class SettlementNotConfirmedError(AppException):
    """
    Raised when the processor does not confirm a claimed payment.

    WHY: A client can never assert its own success. No ledger mutation has
    happened when this is raised, so retrying is always safe; the retryable
    flag is set when the cause was a timeout or an unavailable processor.

    HTTP Status: 402 Payment Required
    """

    status_code = 402
    code = "SETTLEMENT_NOT_CONFIRMED"
    default_message = "Payment has not been confirmed by the payment processor"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "External service error"


class PaymentProcessorError(ExternalServiceError):
    """
    Raised when the payment processor rejects a request.

    HTTP Status: 502 Bad Gateway
    """

    code = "PROCESSOR_ERROR"
    default_message = "Payment processing error"


class ProcessorUnavailableError(PaymentProcessorError):
    """
    Raised when the payment processor cannot be reached or times out.

    HTTP Status: 503 Service Unavailable (retryable)
    """

    status_code = 503
    code = "PROCESSOR_UNAVAILABLE"
    retryable = True
    default_message = "Payment processor is temporarily unavailable"


class ProcessorConfigError(PaymentProcessorError):
    """
    Raised when payment processor credentials are missing or rejected.

    WHY: This is an operator problem, not a user problem. Handlers log it at
    CRITICAL so it alerts rather than disappearing in request noise.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    code = "PROCESSOR_CONFIG_ERROR"
    default_message = "Payment processor is not configured"


class WebhookSignatureError(AppException):
    """
    Raised when a webhook payload fails signature verification.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    code = "SIGNATURE_INVALID"
    default_message = "Invalid webhook signature"


class EmailServiceError(ExternalServiceError):
    """Raised when a notification email cannot be rendered or delivered."""

    code = "EMAIL_ERROR"
    default_message = "Email delivery failed"
