"""
FastAPI dependencies for the payment gateway and notification dispatcher.

WHY: Both are created once at application startup and kept on app.state.
Route handlers receive them through Depends, so tests override them with
fakes instead of patching module globals.
"""

from fastapi import Request

from billing.core.exceptions import ProcessorConfigError
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway


def get_payment_gateway(request: Request) -> PaymentGateway:
    """
    Get the application's payment gateway.

    Raises:
        ProcessorConfigError: If the app was started without a gateway
    """
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise ProcessorConfigError(message="Payment gateway is not initialised")
    return gateway


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    """
    Get the application's notification dispatcher.

    HOW: Created lazily if startup did not run (e.g. ASGI transports that
    skip lifespan events); deliveries then wait for drain().
    """
    dispatcher = getattr(request.app.state, "notification_dispatcher", None)
    if dispatcher is None:
        dispatcher = NotificationDispatcher()
        request.app.state.notification_dispatcher = dispatcher
    return dispatcher
