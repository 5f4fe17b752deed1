"""
Unit tests for Transaction DAO.

WHY: The unique constraints and the conditional refund flip are what keep
the ledger free of double settlement and double refunds.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from billing.dao.transaction import TransactionDAO
from billing.models.invoice import InvoiceStatus
from billing.models.transaction import TransactionStatus
from tests.factories import InvoiceFactory, TransactionFactory, create_settled_invoice


class TestTransactionDAOLookups:
    """Tests for idempotency lookups."""

    @pytest.mark.asyncio
    async def test_get_by_external_payment_id(self, db_session):
        """Test lookup by processor payment id."""
        _, transaction = await create_settled_invoice(db_session, external_payment_id="pi_abc")

        found = await TransactionDAO(db_session).get_by_external_payment_id("pi_abc")

        assert found is not None
        assert found.id == transaction.id
        assert await TransactionDAO(db_session).get_by_external_payment_id("pi_missing") is None

    @pytest.mark.asyncio
    async def test_get_by_invoice(self, db_session):
        """Test lookup of the transaction that settled an invoice."""
        invoice, transaction = await create_settled_invoice(db_session)

        found = await TransactionDAO(db_session).get_by_invoice(invoice.id)

        assert found.id == transaction.id

    @pytest.mark.asyncio
    async def test_list_transactions_filters(self, db_session):
        """Test payer and status filters."""
        await create_settled_invoice(db_session, external_payment_id="pi_1", payer_id="payer-1")
        await create_settled_invoice(db_session, external_payment_id="pi_2", payer_id="payer-2")
        invoice = await InvoiceFactory.create(db_session, payer_id="payer-1", status=InvoiceStatus.REFUNDED)
        await TransactionFactory.create(
            db_session,
            invoice,
            external_payment_id="pi_3",
            status=TransactionStatus.REFUNDED,
        )
        dao = TransactionDAO(db_session)

        payer_rows = await dao.list_transactions(payer_id="payer-1")
        refunded = await dao.list_transactions(status=TransactionStatus.REFUNDED)

        assert {t.external_payment_id for t in payer_rows} == {"pi_1", "pi_3"}
        assert [t.external_payment_id for t in refunded] == ["pi_3"]

    @pytest.mark.asyncio
    async def test_date_range_filter(self, db_session):
        """Test start_date and end_date bound processed_at inclusively."""
        for day, payment_id in [(1, "pi_jan1"), (15, "pi_jan15"), (31, "pi_jan31")]:
            invoice = await InvoiceFactory.create(db_session, status=InvoiceStatus.PAID)
            await TransactionFactory.create(
                db_session,
                invoice,
                external_payment_id=payment_id,
                processed_at=datetime(2026, 1, day, 12, 0),
            )
        dao = TransactionDAO(db_session)

        rows = await dao.list_transactions(
            start_date=datetime(2026, 1, 15, 12, 0), end_date=datetime(2026, 1, 31)
        )

        assert [t.external_payment_id for t in rows] == ["pi_jan15"]
        assert await dao.count_transactions(start_date=datetime(2026, 1, 15)) == 2
        assert await dao.count_transactions(end_date=datetime(2026, 1, 15, 12, 0)) == 2

    @pytest.mark.asyncio
    async def test_search_filter(self, db_session):
        """Test search matches the payment id and the settled invoice's fields, ignoring case."""
        await create_settled_invoice(
            db_session, external_payment_id="pi_alpha", payer_email="jordan@example.com"
        )
        await create_settled_invoice(
            db_session, external_payment_id="pi_beta", invoice_number="INV-SPRING-7"
        )
        dao = TransactionDAO(db_session)

        by_payment = await dao.list_transactions(search="ALPHA")
        by_email = await dao.list_transactions(search="jordan")
        by_invoice = await dao.list_transactions(search="spring")

        assert [t.external_payment_id for t in by_payment] == ["pi_alpha"]
        assert [t.external_payment_id for t in by_email] == ["pi_alpha"]
        assert [t.external_payment_id for t in by_invoice] == ["pi_beta"]
        assert await dao.count_transactions(search="pi_") == 2
        assert await dao.count_transactions(search="nobody") == 0


class TestTransactionConstraints:
    """Unique constraints carry the double-settlement invariant."""

    @pytest.mark.asyncio
    async def test_payment_id_is_unique(self, db_session):
        """Test one row per processor payment."""
        await create_settled_invoice(db_session, external_payment_id="pi_dup")
        other = await InvoiceFactory.create(db_session)

        with pytest.raises(IntegrityError):
            await TransactionFactory.create(db_session, other, external_payment_id="pi_dup")
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_invoice_is_settled_once(self, db_session):
        """Test one row per invoice."""
        invoice, _ = await create_settled_invoice(db_session, external_payment_id="pi_a")

        with pytest.raises(IntegrityError):
            await TransactionFactory.create(db_session, invoice, external_payment_id="pi_b")
        await db_session.rollback()


class TestTransactionRefundFlip:
    """Tests for mark_refunded."""

    @pytest.mark.asyncio
    async def test_mark_refunded_once(self, db_session):
        """Test only the first flip wins."""
        _, transaction = await create_settled_invoice(db_session)
        dao = TransactionDAO(db_session)

        assert await dao.mark_refunded(transaction.id, Decimal("45.00"), "re_1") is True
        assert await dao.mark_refunded(transaction.id, Decimal("90.00"), "re_2") is False
        await db_session.commit()
        await db_session.refresh(transaction)

        assert transaction.status == TransactionStatus.REFUNDED
        assert transaction.refunded_amount == Decimal("45.00")
        assert transaction.refund_reference == "re_1"
        assert transaction.refunded_at is not None
        assert transaction.is_partial_refund is True
        assert transaction.is_refundable is False
