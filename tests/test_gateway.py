"""Tests for the billing gateway."""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practicegate.billing.gateway import BillingGateway
from practicegate.billing.store import ProviderSubscriptionEvent, SubscriptionStore
from practicegate.billing.tier_catalog import PriceBook
from practicegate.core.exceptions import (
    CustomerNotFoundError,
    InvalidTierError,
    NotFoundError,
    ProviderUnavailableError,
)
from practicegate.core.locks import LocalKeyedLock

from conftest import FakeBillingProvider


def build_gateway(
    session: AsyncSession,
    provider: FakeBillingProvider,
    price_book: PriceBook,
    locks: LocalKeyedLock | None = None,
) -> BillingGateway:
    return BillingGateway(
        provider=provider,
        store=SubscriptionStore(session, price_book=price_book),
        locks=locks or LocalKeyedLock(),
        price_book=price_book,
        timeout=5.0,
        retry_initial_delay=0.01,
        retry_max_delay=0.02,
    )


@pytest.fixture
def gateway(
    db_session: AsyncSession,
    fake_provider: FakeBillingProvider,
    price_book: PriceBook,
) -> BillingGateway:
    return build_gateway(db_session, fake_provider, price_book)


class TestCustomers:
    """Tests for customer creation."""

    @pytest.mark.asyncio
    async def test_ensure_customer_is_idempotent(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        first = await gateway.ensure_customer(user_id, "clinician@example.com")
        second = await gateway.ensure_customer(user_id)

        assert first == second
        assert fake_provider.calls["create_customer"] == 1
        assert await gateway.store.customer_id_for(user_id) == first

    @pytest.mark.asyncio
    async def test_concurrent_ensure_customer_creates_one(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_provider: FakeBillingProvider,
        price_book: PriceBook,
    ) -> None:
        user_id = uuid4()
        locks = LocalKeyedLock()

        async def ensure() -> str:
            async with session_factory() as session:
                gateway = build_gateway(session, fake_provider, price_book, locks)
                return await gateway.ensure_customer(user_id)

        customer_ids = await asyncio.gather(*(ensure() for _ in range(10)))

        assert len(set(customer_ids)) == 1
        assert fake_provider.calls["create_customer"] == 1

    @pytest.mark.asyncio
    async def test_customer_creation_retried_once(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        fake_provider.failures["create_customer"] = 1

        customer_id = await gateway.ensure_customer(user_id)

        assert customer_id.startswith("cus_")
        assert fake_provider.calls["create_customer"] == 2

    @pytest.mark.asyncio
    async def test_provider_outage_surfaces_typed_error(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        fake_provider.failures["create_customer"] = 5

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await gateway.ensure_customer(user_id)

        assert exc_info.value.details["operation"] == "create_customer"
        assert exc_info.value.details["attempts"] == 2
        assert fake_provider.calls["create_customer"] == 2
        assert await gateway.store.customer_id_for(user_id) is None


class TestCheckout:
    """Tests for checkout session creation."""

    @pytest.mark.asyncio
    async def test_checkout_session(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        session_id = await gateway.create_checkout_session(
            user_id,
            "price_group_monthly",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

        assert session_id.startswith("cs_test_")
        assert fake_provider.checkout_metadata == [
            {"user_id": str(user_id), "tier_id": "group", "cadence": "monthly"}
        ]

    @pytest.mark.asyncio
    async def test_unknown_price_rejected_before_provider_call(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        with pytest.raises(InvalidTierError):
            await gateway.create_checkout_session(
                user_id,
                "price_unknown",
                success_url="https://app.test/ok",
                cancel_url="https://app.test/cancel",
            )
        assert fake_provider.calls == {}


class TestSubscriptions:
    """Tests for provider subscription mutations."""

    @pytest.mark.asyncio
    async def test_create_subscription_not_retried(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider
    ) -> None:
        fake_provider.failures["create_subscription"] = 1

        with pytest.raises(ProviderUnavailableError):
            await gateway.create_subscription("cus_1", "price_solo_monthly")
        assert fake_provider.calls["create_subscription"] == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_subscription(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider
    ) -> None:
        with pytest.raises(NotFoundError):
            await gateway.cancel_subscription("sub_missing")
        assert fake_provider.calls["cancel_subscription"] == 1

    @pytest.mark.asyncio
    async def test_cancel_user_subscription(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        subscription_id = await gateway.create_subscription("cus_1", "price_solo_monthly")

        now = datetime.now(UTC)
        await gateway.store.upsert_from_provider(
            ProviderSubscriptionEvent(
                provider_subscription_id=subscription_id,
                status="active",
                period_start=now,
                period_end=now + timedelta(days=30),
                occurred_at=now,
                price_id="price_solo_monthly",
                user_id=user_id,
            )
        )

        canceled = await gateway.cancel_user_subscription(user_id, at_period_end=True)
        assert canceled.id == subscription_id
        assert canceled.cancel_at_period_end

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(
        self, gateway: BillingGateway, user_id: UUID
    ) -> None:
        with pytest.raises(NotFoundError):
            await gateway.cancel_user_subscription(user_id)


class TestReads:
    """Tests for invoice and payment method reads."""

    @pytest.mark.asyncio
    async def test_reads_require_customer(self, gateway: BillingGateway, user_id: UUID) -> None:
        with pytest.raises(CustomerNotFoundError):
            await gateway.get_upcoming_invoice(user_id)
        with pytest.raises(CustomerNotFoundError):
            await gateway.list_payment_methods(user_id)

    @pytest.mark.asyncio
    async def test_invoice_and_payment_methods(
        self, gateway: BillingGateway, fake_provider: FakeBillingProvider, user_id: UUID
    ) -> None:
        customer_id = await gateway.ensure_customer(user_id)
        fake_provider.failures["list_payment_methods"] = 1

        invoice = await gateway.get_upcoming_invoice(user_id)
        methods = await gateway.list_payment_methods(user_id)

        assert invoice is not None
        assert invoice.customer_id == customer_id
        assert invoice.amount_due == 12500
        assert [method.card_last4 for method in methods] == ["4242"]
        assert fake_provider.calls["list_payment_methods"] == 2
