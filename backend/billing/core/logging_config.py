"""
Logging setup.

WHY: Ledger transitions, gateway calls and webhook decisions are logged
through module loggers with structured `extra` context. This sets the
level and format once at application start and stamps each record with the
current request ID.
"""

import logging
from typing import Optional

from billing.core.config import settings
from billing.middleware.request_context import RequestIdLogFilter

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(request_id)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for the service.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL)
    """
    resolved = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)

    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdLogFilter) for f in handler.filters):
            handler.addFilter(RequestIdLogFilter())

    logging.getLogger("billing").setLevel(resolved)

    # WHY: The Stripe SDK logs full request lines at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)
