"""
Unit tests for EmailTemplateService.

WHAT: Tests rendering of the billing email templates.

WHY: Ensures every notification renders with the base layout, escapes
payer-controlled text and produces a plain-text part.
"""

from pathlib import Path

import pytest

from billing.core.exceptions import EmailServiceError
from billing.services.email_template_service import (
    EmailTemplateService,
    get_email_template_service,
)


@pytest.fixture
def template_service() -> EmailTemplateService:
    return EmailTemplateService()


class TestRenderPaymentReceipt:
    """Tests for the receipt email."""

    def test_subject_and_content(self, template_service):
        """Test subject, amount and transaction appear in both parts."""
        subject, html, text = template_service.render_payment_receipt_email(
            invoice_number="INV-2026-0001",
            amount="90.00",
            currency="usd",
            payer_name="Pat",
            transaction_number="TXN-20260101-AAAA0000",
            paid_at="2026-01-01 12:00 UTC",
            invoice_id=1,
        )

        assert subject == "Payment Received - Invoice INV-2026-0001"
        assert "USD 90.00" in html
        assert "TXN-20260101-AAAA0000" in html
        assert "/invoices/1" in html
        assert "Hi Pat" in text
        assert "USD 90.00" in text

    def test_extra_fields_ignored(self, template_service):
        """Test unknown data keys do not break rendering."""
        subject, _, _ = template_service.render(
            "payment_receipt",
            {"invoice_number": "INV-2026-0001", "amount": "1.00", "unexpected": True},
        )

        assert "INV-2026-0001" in subject


class TestRenderOtherTemplates:
    """Tests for failure and refund emails."""

    def test_payment_failed(self, template_service):
        """Test the decline reason is shown."""
        subject, html, text = template_service.render(
            "payment_failed",
            {"invoice_number": "INV-2026-0002", "amount": "90.00", "failure_message": "Card declined"},
        )

        assert subject.startswith("Payment Failed")
        assert "Card declined" in html
        assert "No money was taken" in text

    def test_refund_confirmation_escapes_reason(self, template_service):
        """Test payer-supplied text is HTML-escaped."""
        _, html, _ = template_service.render(
            "refund_confirmation",
            {
                "invoice_number": "INV-2026-0003",
                "refunded_amount": "45.00",
                "reason": "<script>alert(1)</script>",
            },
        )

        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestTemplateErrors:
    """Tests for error handling."""

    def test_unknown_template(self, template_service):
        """Test an unknown name raises EmailServiceError."""
        with pytest.raises(EmailServiceError):
            template_service.render("welcome", {})

    def test_missing_template_file(self, tmp_path: Path):
        """Test a missing file raises EmailServiceError."""
        service = EmailTemplateService(template_dir=tmp_path)

        with pytest.raises(EmailServiceError):
            service.render("payment_receipt", {"invoice_number": "INV-1", "amount": "1.00"})

    def test_singleton(self):
        """Test the module-level service is reused."""
        assert get_email_template_service() is get_email_template_service()
