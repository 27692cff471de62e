"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from threading import Lock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

import practicegate.billing.models  # noqa: F401
import practicegate.exports.models  # noqa: F401
from practicegate.api.dependencies.database import get_db
from practicegate.api.dependencies.services import get_export_dispatcher, get_provider
from practicegate.api.main import app
from practicegate.billing.provider import (
    BillingProvider,
    ProviderError,
    ProviderInvoice,
    ProviderNotFoundError,
    ProviderPaymentMethod,
    ProviderSubscription,
)
from practicegate.billing.tier_catalog import PriceBook
from practicegate.core.config import Settings, get_settings
from practicegate.exports.models import ExportJob
from practicegate.models.base import Base

PRICE_IDS = {
    "solo:monthly": "price_solo_monthly",
    "solo:annual": "price_solo_annual",
    "group:monthly": "price_group_monthly",
    "enterprise:monthly": "price_enterprise_monthly",
}
WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_USER_ID = UUID("00000000-0000-4000-8000-000000000001")


class FakeBillingProvider(BillingProvider):
    """In-memory billing provider.

    ``failures`` maps an operation name to the number of calls that should
    raise before the operation starts succeeding.
    """

    def __init__(self) -> None:
        self.calls: dict[str, int] = {}
        self.failures: dict[str, int] = {}
        self.failure_exc: Callable[[], Exception] = lambda: ProviderError("provider unavailable")
        self.customers: dict[str, str] = {}
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.checkout_metadata: list[dict[str, str]] = []
        self._lock = Lock()

    def _record(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] = self.calls.get(operation, 0) + 1
            remaining = self.failures.get(operation, 0)
            if remaining:
                self.failures[operation] = remaining - 1
                raise self.failure_exc()

    def create_customer(self, user_id: UUID, email: str | None, idempotency_key: str) -> str:
        self._record("create_customer")
        with self._lock:
            return self.customers.setdefault(idempotency_key, f"cus_{uuid4().hex[:14]}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        self._record("create_checkout_session")
        self.checkout_metadata.append(metadata)
        return f"cs_test_{uuid4().hex[:12]}"

    def create_subscription(self, customer_id: str, price_id: str) -> ProviderSubscription:
        self._record("create_subscription")
        subscription = ProviderSubscription(
            id=f"sub_{uuid4().hex[:14]}",
            customer_id=customer_id,
            status="active",
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def cancel_subscription(
        self,
        subscription_id: str,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        self._record("cancel_subscription")
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise ProviderNotFoundError(subscription_id)
        subscription.cancel_at_period_end = at_period_end
        if not at_period_end:
            subscription.status = "canceled"
        return subscription

    def get_upcoming_invoice(self, customer_id: str) -> ProviderInvoice | None:
        self._record("get_upcoming_invoice")
        return ProviderInvoice(
            id=None,
            customer_id=customer_id,
            status="draft",
            currency="usd",
            subtotal=12500,
            total=12500,
            amount_due=12500,
        )

    def list_payment_methods(self, customer_id: str) -> list[ProviderPaymentMethod]:
        self._record("list_payment_methods")
        return [
            ProviderPaymentMethod(
                id="pm_card_visa",
                card_brand="visa",
                card_last4="4242",
                card_exp_month=12,
                card_exp_year=2030,
            )
        ]


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so concurrent sessions share one database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def price_book() -> PriceBook:
    return PriceBook(PRICE_IDS)


@pytest.fixture
def fake_provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        app_env="test",
        stripe_secret_key="sk_test_unused",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_ids=PRICE_IDS,
        elevated_user_ids=[str(ADMIN_USER_ID)],
        billing_retry_initial_delay=0.01,
        billing_retry_max_delay=0.02,
        export_daily_limit=3,
        lock_backend="local",
    )


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def dispatched_jobs() -> list[ExportJob]:
    return []


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    fake_provider: FakeBillingProvider,
    dispatched_jobs: list[ExportJob],
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database, settings and provider overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_provider] = lambda: fake_provider
    app.dependency_overrides[get_export_dispatcher] = lambda: dispatched_jobs.append

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()

