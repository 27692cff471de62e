"""Tests for the subscription store and provider reconciliation."""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.billing.models import SubscriptionStatus
from practicegate.billing.store import (
    ProviderSubscriptionEvent,
    ReconcileOutcome,
    SubscriptionStore,
    map_provider_status,
)
from practicegate.billing.tier_catalog import BillingCadence, PriceBook
from practicegate.core.exceptions import InvalidTierError

T0 = datetime(2025, 3, 1, tzinfo=UTC)


def make_event(
    subscription_id: str,
    status: str,
    occurred_at: datetime,
    *,
    user_id: UUID | None = None,
    price_id: str | None = "price_solo_monthly",
    period_start: datetime = T0,
    period_end: datetime = T0 + timedelta(days=31),
    event_id: str | None = None,
) -> ProviderSubscriptionEvent:
    return ProviderSubscriptionEvent(
        provider_subscription_id=subscription_id,
        status=status,
        period_start=period_start,
        period_end=period_end,
        occurred_at=occurred_at,
        price_id=price_id,
        user_id=user_id,
        customer_id="cus_test",
        event_id=event_id,
    )


@pytest.fixture
def store(db_session: AsyncSession, price_book: PriceBook) -> SubscriptionStore:
    return SubscriptionStore(db_session, price_book=price_book)


class TestStatusMapping:
    """Tests for provider status translation."""

    def test_known_statuses(self) -> None:
        assert map_provider_status("active") == SubscriptionStatus.ACTIVE
        assert map_provider_status("trialing") == SubscriptionStatus.ACTIVE
        assert map_provider_status("unpaid") == SubscriptionStatus.PAST_DUE
        assert map_provider_status("incomplete_expired") == SubscriptionStatus.CANCELED

    def test_unknown_status(self) -> None:
        with pytest.raises(ValueError):
            map_provider_status("paused_forever")


class TestSubscriptionStore:
    """Tests for reads and manual assignment."""

    @pytest.mark.asyncio
    async def test_get_unknown_user_returns_default(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        record = await store.get(user_id)
        assert record.user_id == user_id
        assert record.tier_id == "free"
        assert record.status == SubscriptionStatus.NONE
        assert not record.is_persisted
        assert await store.history(user_id) == []

    @pytest.mark.asyncio
    async def test_set_tier_creates_active_record(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        record = await store.set_tier(user_id, "group", BillingCadence.ANNUAL)
        assert record.tier_id == "group"
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.cadence == BillingCadence.ANNUAL
        assert record.current_period_start is not None
        assert record.current_period_end is not None
        assert record.current_period_end - record.current_period_start >= timedelta(days=365)

        updated = await store.set_tier(user_id, "solo")
        assert updated.id == record.id
        assert updated.tier_id == "solo"
        assert len(await store.history(user_id)) == 1

    @pytest.mark.asyncio
    async def test_set_tier_rejects_unknown_tier(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        with pytest.raises(InvalidTierError):
            await store.set_tier(user_id, "platinum")
        assert await store.history(user_id) == []

    @pytest.mark.asyncio
    async def test_attach_customer_first_writer_wins(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        assert await store.attach_customer(user_id, "cus_first") == "cus_first"
        assert await store.attach_customer(user_id, "cus_second") == "cus_first"
        assert await store.customer_id_for(user_id) == "cus_first"

        record = await store.get(user_id)
        assert record.is_persisted
        assert record.status == SubscriptionStatus.NONE


class TestReconciliation:
    """Tests for ``upsert_from_provider``."""

    @pytest.mark.asyncio
    async def test_first_event_binds_subscription(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        result = await store.upsert_from_provider(
            make_event("sub_1", "active", T0, user_id=user_id, price_id="price_group_monthly")
        )
        assert result.outcome == ReconcileOutcome.CREATED
        record = await store.get(user_id)
        assert record.provider_subscription_id == "sub_1"
        assert record.tier_id == "group"
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.provider_customer_id == "cus_test"

    @pytest.mark.asyncio
    async def test_event_binds_to_manually_assigned_record(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        manual = await store.set_tier(user_id, "solo")
        result = await store.upsert_from_provider(
            make_event("sub_1", "active", T0, user_id=user_id)
        )
        assert result.outcome == ReconcileOutcome.CREATED
        assert result.record is not None
        assert result.record.id == manual.id
        assert len(await store.history(user_id)) == 1

    @pytest.mark.asyncio
    async def test_out_of_order_events_converge(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))

        newer = make_event("sub_1", "past_due", T0 + timedelta(hours=2))
        older = make_event("sub_1", "active", T0 + timedelta(hours=1))

        assert (await store.upsert_from_provider(newer)).outcome == ReconcileOutcome.APPLIED
        assert (await store.upsert_from_provider(older)).outcome == ReconcileOutcome.STALE

        record = await store.get(user_id)
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.provider_updated_at == T0 + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_later_period_end_wins_out_of_order(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        t1 = T0 + timedelta(days=31)
        t2 = T0 + timedelta(days=62)
        await store.upsert_from_provider(
            make_event("sub_1", "active", T0, user_id=user_id, period_end=t1, event_id="evt_1")
        )

        renewed = make_event(
            "sub_1", "active", T0 + timedelta(hours=1), period_start=t1, period_end=t2,
            event_id="evt_3",
        )
        late = make_event(
            "sub_1", "active", T0 + timedelta(hours=1), period_end=t1, event_id="evt_2"
        )

        assert (await store.upsert_from_provider(renewed)).outcome == ReconcileOutcome.APPLIED
        assert (await store.upsert_from_provider(late)).outcome == ReconcileOutcome.STALE

        record = await store.get(user_id)
        assert record.current_period_end == t2
        assert record.current_period_start == t1

    @pytest.mark.asyncio
    async def test_activation_in_same_second_is_applied(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        created = await store.upsert_from_provider(
            make_event("sub_1", "incomplete", T0, user_id=user_id, event_id="evt_created")
        )
        assert created.outcome == ReconcileOutcome.CREATED

        activated = await store.upsert_from_provider(
            make_event("sub_1", "active", T0, event_id="evt_updated")
        )
        assert activated.outcome == ReconcileOutcome.APPLIED

        record = await store.get(user_id)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.provider_event_id == "evt_updated"

    @pytest.mark.asyncio
    async def test_same_second_regression_is_stale(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(
            make_event("sub_1", "active", T0, user_id=user_id, event_id="evt_updated")
        )
        result = await store.upsert_from_provider(
            make_event("sub_1", "incomplete", T0, event_id="evt_created")
        )
        assert result.outcome == ReconcileOutcome.STALE
        assert (await store.get(user_id)).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_same_second_activation_without_event_ids(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "incomplete", T0, user_id=user_id))
        result = await store.upsert_from_provider(make_event("sub_1", "active", T0))
        assert result.outcome == ReconcileOutcome.APPLIED
        assert (await store.get(user_id)).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_redelivered_event_id_is_duplicate(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        event = make_event("sub_1", "active", T0, user_id=user_id, event_id="evt_1")
        await store.upsert_from_provider(event)

        result = await store.upsert_from_provider(event)
        assert result.outcome == ReconcileOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))
        event = make_event("sub_1", "past_due", T0 + timedelta(hours=1))

        first = await store.upsert_from_provider(event)
        second = await store.upsert_from_provider(event)

        assert first.changed
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert not second.changed
        assert (await store.get(user_id)).status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_cancellation_is_terminal(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))
        canceled = await store.upsert_from_provider(
            make_event("sub_1", "canceled", T0 + timedelta(hours=1))
        )
        assert canceled.outcome == ReconcileOutcome.APPLIED

        revived = await store.upsert_from_provider(
            make_event("sub_1", "active", T0 + timedelta(hours=2))
        )
        assert revived.outcome == ReconcileOutcome.TERMINAL

        current = await store.get(user_id)
        assert current.status == SubscriptionStatus.NONE
        assert not current.is_persisted

        history = await store.history(user_id)
        assert len(history) == 1
        assert history[0].status == SubscriptionStatus.CANCELED
        assert history[0].canceled_at is not None

    @pytest.mark.asyncio
    async def test_resubscribe_after_cancel_keeps_history(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))
        await store.upsert_from_provider(make_event("sub_1", "canceled", T0 + timedelta(hours=1)))

        result = await store.upsert_from_provider(
            make_event("sub_2", "active", T0 + timedelta(days=2), user_id=user_id)
        )
        assert result.outcome == ReconcileOutcome.CREATED

        current = await store.get(user_id)
        assert current.provider_subscription_id == "sub_2"
        assert current.status == SubscriptionStatus.ACTIVE
        assert len(await store.history(user_id)) == 2

    @pytest.mark.asyncio
    async def test_new_subscription_supersedes_live_one(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))
        await store.upsert_from_provider(
            make_event("sub_2", "active", T0 + timedelta(days=1), user_id=user_id)
        )

        current = await store.get(user_id)
        assert current.provider_subscription_id == "sub_2"
        previous = await store.get_by_provider_id("sub_1")
        assert previous is not None
        assert previous.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_abandoned_second_checkout_keeps_live_subscription(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))

        result = await store.upsert_from_provider(
            make_event("sub_2", "incomplete_expired", T0 + timedelta(hours=1), user_id=user_id)
        )
        assert result.outcome == ReconcileOutcome.CREATED

        current = await store.get(user_id)
        assert current.provider_subscription_id == "sub_1"
        assert current.status == SubscriptionStatus.ACTIVE

        abandoned = await store.get_by_provider_id("sub_2")
        assert abandoned is not None
        assert abandoned.status == SubscriptionStatus.CANCELED
        assert abandoned.live_key is None

    @pytest.mark.asyncio
    async def test_older_subscription_does_not_supersede(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(
            make_event("sub_1", "active", T0 + timedelta(days=1), user_id=user_id)
        )
        await store.upsert_from_provider(make_event("sub_2", "active", T0, user_id=user_id))

        assert (await store.get(user_id)).provider_subscription_id == "sub_1"
        older = await store.get_by_provider_id("sub_2")
        assert older is not None
        assert older.live_key is None

        # A later update for the older subscription takes over the live slot
        result = await store.upsert_from_provider(
            make_event("sub_2", "active", T0 + timedelta(days=2))
        )
        assert result.outcome == ReconcileOutcome.APPLIED
        assert (await store.get(user_id)).provider_subscription_id == "sub_2"
        replaced = await store.get_by_provider_id("sub_1")
        assert replaced is not None
        assert replaced.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_unknown_subscription_without_user_is_dropped(
        self, store: SubscriptionStore
    ) -> None:
        result = await store.upsert_from_provider(make_event("sub_orphan", "active", T0))
        assert result.outcome == ReconcileOutcome.UNKNOWN
        assert await store.get_by_provider_id("sub_orphan") is None

    @pytest.mark.asyncio
    async def test_unrecognised_status_is_dropped(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        result = await store.upsert_from_provider(
            make_event("sub_1", "paused_forever", T0, user_id=user_id)
        )
        assert result.outcome == ReconcileOutcome.UNKNOWN
        assert await store.history(user_id) == []

    @pytest.mark.asyncio
    async def test_unknown_price_keeps_tier(
        self, store: SubscriptionStore, user_id: UUID
    ) -> None:
        await store.upsert_from_provider(make_event("sub_1", "active", T0, user_id=user_id))
        await store.upsert_from_provider(
            make_event("sub_1", "active", T0 + timedelta(hours=1), price_id="price_legacy")
        )
        assert (await store.get(user_id)).tier_id == "solo"


@pytest.mark.asyncio
async def test_records_are_scoped_per_user(store: SubscriptionStore) -> None:
    first, second = uuid4(), uuid4()
    await store.set_tier(first, "enterprise")
    assert (await store.get(second)).tier_id == "free"
