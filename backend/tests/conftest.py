"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

from typing import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing.db.session import build_engine, build_session_factory, get_db
from billing.main import create_app
from billing.models.base import Base
from billing.services.email import EmailService, MockEmailProvider
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway

from tests.factories import WEBHOOK_SECRET


# Test database URL
# WHY: Using SQLite for tests eliminates external database dependencies
# and makes tests faster. Unique constraints behave the same way.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh ledger.
    """
    engine = create_async_engine(TEST_ASYNC_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Note: expire_on_commit=False matches the application session factory.
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """
    Session factory over a file-backed SQLite database.

    WHY: Code that opens its own sessions (the reconciliation sweep) needs
    every session to see the same committed data.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def stripe_client() -> MagicMock:
    """
    Mocked StripeClient.

    WHY: Tests configure return values and side effects per call, e.g.
    stripe_client.payment_intents.retrieve.return_value = payment_intent(...)
    """
    return MagicMock()


@pytest.fixture
def gateway(stripe_client) -> PaymentGateway:
    """Real gateway wired to the mocked StripeClient."""
    return PaymentGateway(
        api_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        timeout_seconds=5.0,
        client=stripe_client,
    )


@pytest.fixture(autouse=True)
def clear_sent_emails():
    """Reset the mock mailbox around every test."""
    MockEmailProvider.clear_sent_emails()
    yield
    MockEmailProvider.clear_sent_emails()


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    """
    Notification dispatcher delivering to the mock email provider.

    Note: Not started; tests call drain() to deliver queued emails inline.
    """
    return NotificationDispatcher(email_service=EmailService(provider=MockEmailProvider()))


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, gateway, dispatcher) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server, making tests faster and more reliable.
    """
    app = create_app(gateway=gateway, dispatcher=dispatcher)

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
