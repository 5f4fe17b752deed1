"""
Email service for sending billing notifications.

WHAT: Unified interface for sending transactional email through a provider
(Resend, or a mock in development and tests).

WHY: Payers are told about every ledger event that concerns them:
1. Payment receipt after settlement
2. Payment failure so they can retry
3. Refund confirmation

HOW: Renders Jinja2 templates via EmailTemplateService and sends through
an EmailProvider. Delivery problems are reported as a failed EmailResult;
the notification dispatcher decides what to do with them.

Design decisions:
- Provider abstraction: Resend in production, mock when no key is set
- Email never runs inside a ledger transaction (see notifications.py)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from billing.core.config import settings
from billing.models.base import utcnow
from billing.services.email_template_service import (
    EmailTemplateService,
    get_email_template_service,
)

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


# ============================================================================
# Email Types
# ============================================================================


@dataclass
class EmailMessage:
    """
    Represents an email to be sent.

    WHAT: Data container for email content and metadata.
    """

    to_email: str
    """Recipient email address."""

    subject: str
    """Email subject line."""

    html_content: str
    """HTML email body."""

    text_content: Optional[str] = None
    """Plain text fallback."""

    from_email: Optional[str] = None
    """Sender (defaults to settings.EMAIL_FROM)."""

    reply_to: Optional[str] = None
    """Reply-to address."""

    template: Optional[str] = None
    """Template name, for logging."""

    metadata: Optional[Dict[str, Any]] = None
    """Additional metadata for tracking."""


@dataclass
class EmailResult:
    """Result of an email send operation."""

    success: bool
    """Whether email was sent successfully."""

    message_id: Optional[str] = None
    """Provider message ID for tracking."""

    error: Optional[str] = None
    """Error message if send failed."""

    provider: Optional[str] = None
    """Which provider was used."""


# ============================================================================
# Email Provider Interface
# ============================================================================


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    WHY: Provider abstraction allows switching providers and testing with
    a mock provider.
    """

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """Send an email message."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if this provider is properly configured."""


class ResendProvider(EmailProvider):
    """
    Resend email provider implementation.

    HOW: Uses httpx for async HTTP requests to the Resend REST API.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: float = 30.0):
        self._api_key = api_key or settings.RESEND_API_KEY
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send email via Resend API.

        Args:
            message: Email message to send

        Returns:
            EmailResult with send status
        """
        if not self.is_configured():
            return EmailResult(
                success=False,
                error="Resend API key not configured",
                provider="resend",
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": message.from_email or settings.EMAIL_FROM,
                        "to": [message.to_email],
                        "subject": message.subject,
                        "html": message.html_content,
                        "text": message.text_content,
                        "reply_to": message.reply_to or settings.EMAIL_ADMIN,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Resend send error: {e}")
            return EmailResult(success=False, error=str(e), provider="resend")

        if response.status_code in (200, 201):
            data = response.json()
            return EmailResult(
                success=True,
                message_id=data.get("id"),
                provider="resend",
            )

        return EmailResult(
            success=False,
            error=f"Resend API error: {response.status_code} - {response.text}",
            provider="resend",
        )


class MockEmailProvider(EmailProvider):
    """
    Mock email provider for testing and development.

    WHY: Allows exercising notification flows without sending real emails.
    Logs emails instead of sending them.
    """

    sent_emails: List[EmailMessage] = []
    """Class-level list to track sent emails for testing."""

    def is_configured(self) -> bool:
        return True

    async def send(self, message: EmailMessage) -> EmailResult:
        logger.info(
            f"[MOCK EMAIL] To: {message.to_email}, "
            f"Subject: {message.subject}, "
            f"Template: {message.template}"
        )

        MockEmailProvider.sent_emails.append(message)

        return EmailResult(
            success=True,
            message_id=f"mock-{utcnow().timestamp()}",
            provider="mock",
        )

    @classmethod
    def clear_sent_emails(cls):
        """Clear sent emails list (for test cleanup)."""
        cls.sent_emails = []


# ============================================================================
# Email Service
# ============================================================================


class EmailService:
    """
    High-level email service for billing notifications.

    WHAT: send(recipient, template, data) renders and delivers one email.

    HOW: Chooses Resend when an API key is configured, otherwise the mock
    provider.
    """

    def __init__(
        self,
        provider: Optional[EmailProvider] = None,
        template_service: Optional[EmailTemplateService] = None,
    ):
        """
        Initialize email service.

        Args:
            provider: Email provider to use (auto-detected if not provided)
            template_service: Template service for rendering
        """
        if provider:
            self._provider = provider
        elif settings.RESEND_API_KEY:
            self._provider = ResendProvider()
        else:
            logger.warning("No email provider configured, using mock provider")
            self._provider = MockEmailProvider()

        self._template_service = template_service or get_email_template_service()

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    async def send(self, recipient: str, template: str, data: Dict[str, Any]) -> EmailResult:
        """
        Render a template and send it to one recipient.

        Args:
            recipient: Recipient email address
            template: Template name (payment_receipt, payment_failed, refund_confirmation)
            data: Template variables

        Returns:
            EmailResult with send status

        Raises:
            EmailServiceError: If the template cannot be rendered
        """
        subject, html_content, text_content = self._template_service.render(template, data)
        message = EmailMessage(
            to_email=recipient,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            template=template,
            metadata={k: data[k] for k in ("invoice_number", "transaction_number") if k in data},
        )
        return await self.send_email(message)

    async def send_email(self, message: EmailMessage) -> EmailResult:
        """
        Send a prepared email message.

        Args:
            message: Email message to send

        Returns:
            EmailResult with send status
        """
        logger.info(
            f"Sending {message.template} email to {message.to_email}",
            extra={"template": message.template, "to": message.to_email},
        )

        result = await self._provider.send(message)

        if result.success:
            logger.info(
                f"Email sent successfully: {result.message_id}",
                extra={"message_id": result.message_id, "provider": result.provider},
            )
        else:
            logger.error(
                f"Email send failed: {result.error}",
                extra={
                    "template": message.template,
                    "to": message.to_email,
                    "error": result.error,
                },
            )

        return result
