"""
Integration tests for invoice endpoints.

WHAT: Create, list and read invoices over HTTP.

WHY: Verifies request validation, error bodies and payer scoping as a
client sees them.
"""

from decimal import Decimal

import pytest

from tests.factories import InvoiceFactory

API = "/api/invoices"


def invoice_payload(payer_id: str = "payer-1", amount: str = "80.00", tax: str = "10.00") -> dict:
    return {
        "payer": {"payer_id": payer_id, "email": "payer@example.com", "name": "Pat Payer"},
        "item": {
            "reference": "enrollment-1",
            "amount": amount,
            "tax_amount": tax,
            "description": "Intro to Python",
        },
    }


class TestCreateInvoice:
    """Tests for POST /api/invoices."""

    @pytest.mark.asyncio
    async def test_create(self, client):
        """Test a valid request creates a pending invoice."""
        response = await client.post(API, json=invoice_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert Decimal(data["total_amount"]) == Decimal("90.00")
        assert data["invoice_number"].startswith("INV-")
        assert data["paid_at"] is None

    @pytest.mark.asyncio
    async def test_zero_amount(self, client):
        """Test a zero amount is a 400 validation error."""
        response = await client.post(API, json=invoice_payload(amount="0"))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_negative_tax(self, client):
        """Test negative tax is a 400 validation error."""
        response = await client.post(API, json=invoice_payload(tax="-1.00"))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_email(self, client):
        """Test request-schema errors use the same error body."""
        payload = invoice_payload()
        payload["payer"]["email"] = "not-an-email"

        response = await client.post(API, json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]


class TestReadInvoices:
    """Tests for GET /api/invoices."""

    @pytest.mark.asyncio
    async def test_list_for_payer(self, client, db_session):
        """Test a payer only sees their own invoices."""
        await InvoiceFactory.create(db_session, payer_id="payer-1")
        await InvoiceFactory.create(db_session, payer_id="payer-1")
        await InvoiceFactory.create(db_session, payer_id="payer-2")

        response = await client.get(API, params={"payer_id": "payer-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert {i["payer_id"] for i in data["items"]} == {"payer-1"}

    @pytest.mark.asyncio
    async def test_list_requires_payer(self, client):
        """Test listing without payer_id is rejected."""
        response = await client.get(API)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_invoice(self, client, db_session):
        """Test reading an invoice by id."""
        invoice = await InvoiceFactory.create(db_session)

        response = await client.get(f"{API}/{invoice.id}", params={"payer_id": "payer-1"})

        assert response.status_code == 200
        assert response.json()["invoice_number"] == invoice.invoice_number

    @pytest.mark.asyncio
    async def test_other_payer_gets_404(self, client, db_session):
        """Test another payer's invoice reads as not found."""
        invoice = await InvoiceFactory.create(db_session, payer_id="payer-1")

        response = await client.get(f"{API}/{invoice.id}", params={"payer_id": "payer-2"})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, client):
        """Test unknown id is 404."""
        response = await client.get(f"{API}/999")

        assert response.status_code == 404
