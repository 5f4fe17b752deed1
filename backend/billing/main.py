"""
Main FastAPI application.

WHY: This is the entry point for the billing service. It configures
middleware, routes, exception handlers and the long-lived collaborators
(payment gateway, notification dispatcher, reconciliation scheduler).
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing.api import invoices, payments, refunds, transactions, webhooks
from billing.core.config import settings
from billing.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from billing.core.exceptions import AppException
from billing.core.logging_config import configure_logging
from billing.middleware import RequestContextMiddleware
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway
from billing.services.scheduler import get_scheduler_status, shutdown_scheduler, start_scheduler


def create_app(
    gateway: Optional[PaymentGateway] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern lets tests build an app around a fake gateway.

    Args:
        gateway: Payment gateway (built from settings if not provided)
        dispatcher: Notification dispatcher (built on startup if not provided)

    Returns:
        Configured FastAPI application instance
    """
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Invoices, payment settlement and refunds",
        version=settings.VERSION,
        docs_url=f"{settings.API_PREFIX}/docs",
        redoc_url=f"{settings.API_PREFIX}/redoc",
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
    )

    # WHY: One explicit gateway per app; services receive it via Depends
    app.state.payment_gateway = gateway or PaymentGateway.from_settings(settings)
    app.state.notification_dispatcher = dispatcher

    # Register exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Reports whether payments can be taken without calling Stripe.
        """
        notifier = app.state.notification_dispatcher
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "stripe_configured": settings.stripe_configured,
            "webhooks_configured": bool(settings.STRIPE_WEBHOOK_SECRET),
            "notifications": {
                "running": bool(notifier and notifier.is_running),
                "pending": notifier.pending if notifier else 0,
            },
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """
        Application startup event handler.

        WHY: Starts the notification worker and the reconciliation sweep.
        """
        if app.state.notification_dispatcher is None:
            app.state.notification_dispatcher = NotificationDispatcher()
        await app.state.notification_dispatcher.start()
        await start_scheduler(app.state.payment_gateway, app.state.notification_dispatcher)

    @app.on_event("shutdown")
    async def shutdown_event():
        """
        Application shutdown event handler.

        WHY: Stops the sweep first, then flushes queued notifications.
        """
        await shutdown_scheduler()
        if app.state.notification_dispatcher is not None:
            await app.state.notification_dispatcher.stop()

    app.include_router(invoices.router, prefix=settings.API_PREFIX)
    app.include_router(payments.router, prefix=settings.API_PREFIX)
    app.include_router(transactions.router, prefix=settings.API_PREFIX)
    app.include_router(refunds.router, prefix=settings.API_PREFIX)
    app.include_router(webhooks.router, prefix=settings.API_PREFIX)

    return app


# WHY: Creating the app instance here allows it to be imported by uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
