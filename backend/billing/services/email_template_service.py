"""
Email Template Service for rendering Jinja2 email templates.

WHAT: Loads and renders the billing notification templates.

WHY: Template-based emails provide:
- Consistent branding across receipts and refund notices
- Content updates without code changes
- Template inheritance (every email extends base.html)

HOW: Jinja2 environment with a FileSystemLoader rooted at
billing/templates/email. Each notification has a render method returning
(subject, html, text).
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from billing.core.config import settings
from billing.core.exceptions import EmailServiceError
from billing.models.base import utcnow

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

RenderedEmail = Tuple[str, str, str]


class EmailTemplateService:
    """
    Service for rendering email templates.

    WHAT: Renders the payment receipt, payment failed and refund
    confirmation emails.

    HOW: Uses Jinja2 with autoescaping; compiled templates are cached by
    the environment.

    Example:
        template_service = EmailTemplateService()
        subject, html, text = template_service.render(
            "payment_receipt",
            {"invoice_number": "INV-2026-0001", "amount": "90.00", ...},
        )
    """

    def __init__(self, template_dir: Optional[Path] = None):
        """
        Initialize template service.

        Args:
            template_dir: Path to templates directory (defaults to billing/templates/email)
        """
        self._template_dir = template_dir or TEMPLATE_DIR
        self._env = Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._renderers: Dict[str, Callable[..., RenderedEmail]] = {
            "payment_receipt": self.render_payment_receipt_email,
            "payment_failed": self.render_payment_failed_email,
            "refund_confirmation": self.render_refund_confirmation_email,
        }

    def _get_base_context(self) -> Dict[str, Any]:
        return {
            "year": utcnow().year,
            "frontend_url": settings.FRONTEND_URL,
            "platform_name": settings.PROJECT_NAME,
            "support_email": settings.EMAIL_ADMIN,
        }

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Render a template with given context.

        Args:
            template_name: Name of template file (e.g., "payment_receipt.html")
            context: Template variables

        Returns:
            Rendered HTML string

        Raises:
            EmailServiceError: If template not found or render fails
        """
        try:
            template = self._env.get_template(template_name)
            full_context = {**self._get_base_context(), **context}
            return template.render(**full_context)
        except TemplateNotFound:
            logger.error(f"Email template not found: {template_name}")
            raise EmailServiceError(
                message=f"Email template not found: {template_name}",
                template=template_name,
            )
        except Exception as e:
            logger.error(f"Error rendering template {template_name}: {e}")
            raise EmailServiceError(
                message="Failed to render email template",
                template=template_name,
                error=str(e),
            )

    def render(self, template: str, data: Dict[str, Any]) -> RenderedEmail:
        """
        Render a notification by template name.

        Args:
            template: One of payment_receipt, payment_failed, refund_confirmation
            data: Template variables

        Returns:
            Tuple of (subject, html_content, text_content)

        Raises:
            EmailServiceError: If the template name is unknown or rendering fails
        """
        renderer = self._renderers.get(template)
        if renderer is None:
            raise EmailServiceError(
                message=f"Unknown email template: {template}",
                template=template,
            )
        return renderer(**data)

    def render_payment_receipt_email(
        self,
        invoice_number: str,
        amount: str,
        currency: str = "usd",
        payer_name: Optional[str] = None,
        transaction_number: Optional[str] = None,
        paid_at: Optional[str] = None,
        invoice_id: Optional[int] = None,
        **extra: Any,
    ) -> RenderedEmail:
        """
        Render the payment receipt.

        Returns:
            Tuple of (subject, html_content, text_content)
        """
        context = {
            "payer_name": payer_name or "there",
            "invoice_id": invoice_id,
            "invoice_number": invoice_number,
            "amount": amount,
            "currency": currency.upper(),
            "transaction_number": transaction_number,
            "paid_at": paid_at or utcnow().strftime("%Y-%m-%d %H:%M UTC"),
        }

        html = self.render_template("payment_receipt.html", context)
        text = self._generate_text_version(
            f"Hi {context['payer_name']},\n\n"
            f"Thank you for your payment!\n\n"
            f"Invoice: {invoice_number}\n"
            f"Amount: {context['currency']} {amount}\n"
            + (f"Transaction: {transaction_number}\n" if transaction_number else "")
            + f"Paid: {context['paid_at']}"
        )

        return f"Payment Received - Invoice {invoice_number}", html, text

    def render_payment_failed_email(
        self,
        invoice_number: str,
        amount: str,
        currency: str = "usd",
        payer_name: Optional[str] = None,
        failure_message: Optional[str] = None,
        invoice_id: Optional[int] = None,
        **extra: Any,
    ) -> RenderedEmail:
        """Render the payment failed notice."""
        context = {
            "payer_name": payer_name or "there",
            "invoice_id": invoice_id,
            "invoice_number": invoice_number,
            "amount": amount,
            "currency": currency.upper(),
            "failure_message": failure_message,
        }

        html = self.render_template("payment_failed.html", context)
        text = self._generate_text_version(
            f"Hi {context['payer_name']},\n\n"
            f"Your payment for invoice {invoice_number} "
            f"({context['currency']} {amount}) did not go through.\n\n"
            + (f"Reason: {failure_message}\n\n" if failure_message else "")
            + "No money was taken. You can try again at any time."
        )

        return f"Payment Failed - Invoice {invoice_number}", html, text

    def render_refund_confirmation_email(
        self,
        invoice_number: str,
        refunded_amount: str,
        currency: str = "usd",
        payer_name: Optional[str] = None,
        transaction_number: Optional[str] = None,
        reason: Optional[str] = None,
        **extra: Any,
    ) -> RenderedEmail:
        """Render the refund confirmation."""
        context = {
            "payer_name": payer_name or "there",
            "invoice_number": invoice_number,
            "refunded_amount": refunded_amount,
            "currency": currency.upper(),
            "transaction_number": transaction_number,
            "reason": reason,
        }

        html = self.render_template("refund_confirmation.html", context)
        text = self._generate_text_version(
            f"Hi {context['payer_name']},\n\n"
            f"A refund of {context['currency']} {refunded_amount} for invoice "
            f"{invoice_number} has been issued.\n\n"
            + (f"Reason: {reason}\n\n" if reason else "")
            + "It may take 5-10 business days to appear on your statement."
        )

        return f"Refund Issued - Invoice {invoice_number}", html, text

    @staticmethod
    def _generate_text_version(content: str) -> str:
        footer = (
            "\n\n---\n"
            f"{settings.PROJECT_NAME}\n"
            "If you didn't expect this email, please contact support."
        )
        return content.strip() + footer


# Module-level singleton
_template_service: Optional[EmailTemplateService] = None


def get_email_template_service() -> EmailTemplateService:
    """
    Get or create the global template service instance.

    WHY: Keeps the Jinja2 template cache warm across notifications.
    """
    global _template_service

    if _template_service is None:
        _template_service = EmailTemplateService()

    return _template_service
