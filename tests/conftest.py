"""
Pytest configuration and fixtures.
"""
import itertools
import os
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock

# The API module reads settings at import time
os.environ.setdefault("FEDAPAY_SECRET_KEY", "sk_sandbox_test_key")
os.environ.setdefault("FEDAPAY_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from deposit_gateway.config import Settings
from deposit_gateway.core.deposits import DepositService
from deposit_gateway.database.models import Base, Transaction, User
from deposit_gateway.database.repositories import TransactionStore
from deposit_gateway.integrations.fedapay_client import (
    FedaPayClient,
    PaymentToken,
    ProcessorTransaction,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"
PAYMENT_URL = "https://sandbox-checkout.fedapay.com/pay/tok_test"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without database or HTTP app")
    config.addinivalue_line("markers", "race: concurrent reconciliation scenarios")
    config.addinivalue_line("markers", "integration: tests driving the HTTP API")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        fedapay_secret_key="sk_sandbox_test_key",
        fedapay_environment="sandbox",
        fedapay_webhook_secret=WEBHOOK_SECRET,
        fedapay_max_retries=1,
        database_url=TEST_DATABASE_URL,
        app_name="deposit-gateway-test",
        app_env="test",
        log_level="DEBUG",
        callback_base_url="http://api.test",
        client_url="http://client.test",
        settlement_poll_attempts=3,
        settlement_poll_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """
    In-memory SQLite engine shared by every session of a test.

    Connections are not rolled back on return to the pool so that one
    session finishing cannot discard another session's in-flight work.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_reset_on_return=None,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(session_factory: async_sessionmaker[AsyncSession]) -> User:
    """User u1 with an empty balance."""
    async with session_factory() as db:
        user = User(
            id="u1",
            name="Koffi Agbo",
            email="koffi@example.com",
            phone_number="+22997000000",
            country="BJ",
            balance=0,
        )
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
def mock_processor() -> AsyncMock:
    """FedaPay client double; each created transaction gets a fresh ID."""
    processor = AsyncMock(spec=FedaPayClient)
    ids = itertools.count(1001)

    async def create_remote(**kwargs: Any) -> ProcessorTransaction:
        return ProcessorTransaction(id=str(next(ids)), status="pending")

    processor.create_remote_transaction.side_effect = create_remote
    processor.generate_payment_token.return_value = PaymentToken(token="tok_test", url=PAYMENT_URL)
    processor.send_now.return_value = {}
    processor.fetch_remote_status.return_value = ProcessorTransaction(id="1001", status="pending")
    return processor


@pytest.fixture
def deposit_service(test_settings: Settings, mock_processor: AsyncMock) -> DepositService:
    return DepositService(test_settings, mock_processor, sleep=AsyncMock())


@pytest.fixture
def pending_deposit(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Transaction]]:
    """Factory inserting a pending deposit already linked to FedaPay."""

    async def _make(
        external_id: str = "fp_1001", amount: int = 5000, user_id: str = "u1"
    ) -> Transaction:
        async with session_factory() as db:
            transaction = Transaction(
                user_id=user_id,
                amount=amount,
                currency="XOF",
                description="Test deposit",
                customer={
                    "firstname": "Koffi",
                    "lastname": "Agbo",
                    "email": "koffi@example.com",
                    "phone_number": "+22997000000",
                    "country": "BJ",
                    "placeholders": [],
                },
                external_id=external_id,
            )
            await TransactionStore(db).create(transaction)
            await db.commit()
            return transaction

    return _make


@pytest.fixture
def fetch_balance(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[int]]:
    async def _fetch(user_id: str = "u1") -> int:
        async with session_factory() as db:
            return int(await db.scalar(select(User.balance).where(User.id == user_id)))

    return _fetch


@pytest.fixture
def fetch_transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[Transaction]]:
    async def _fetch(transaction_id: str) -> Transaction:
        async with session_factory() as db:
            return await TransactionStore(db).get(transaction_id)

    return _fetch


@pytest.fixture
def count_transactions(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], Awaitable[int]]:
    async def _count() -> int:
        async with session_factory() as db:
            return int(await db.scalar(select(func.count(Transaction.id))))

    return _count


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    deposit_service: DepositService,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database and service."""
    from deposit_gateway.api.main import app
    from deposit_gateway.api.routes import get_deposit_service
    from deposit_gateway.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_deposit_service] = lambda: deposit_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def sample_deposit_data() -> dict[str, Any]:
    """Sample deposit request body."""
    return {
        "amount": 5000,
        "customer": {"phone_number": "+22997000000"},
        "description": "Wallet top-up",
        "userId": "u1",
    }
