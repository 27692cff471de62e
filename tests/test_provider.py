"""Tests for Stripe event parsing and the Stripe adapter."""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import pytest

from practicegate.billing.provider import StripeBillingProvider, parse_subscription_event


def subscription_event(
    event_type: str = "customer.subscription.updated",
    *,
    status: str = "active",
    metadata: dict[str, str] | None = None,
    period_on_item: bool = False,
) -> dict[str, Any]:
    period = {"current_period_start": 1735689600, "current_period_end": 1738368000}
    item: dict[str, Any] = {"price": {"id": "price_solo_monthly"}}
    subscription: dict[str, Any] = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": status,
        "metadata": metadata or {},
        "items": {"data": [item]},
    }
    if period_on_item:
        item.update(period)
    else:
        subscription.update(period)
    return {
        "id": "evt_1",
        "type": event_type,
        "created": 1735700000,
        "data": {"object": subscription},
    }


class TestParseSubscriptionEvent:
    """Tests for ``parse_subscription_event``."""

    def test_parses_subscription_fields(self) -> None:
        user_id = uuid4()
        event = parse_subscription_event(subscription_event(metadata={"user_id": str(user_id)}))

        assert event is not None
        assert event.provider_subscription_id == "sub_123"
        assert event.customer_id == "cus_123"
        assert event.status == "active"
        assert event.price_id == "price_solo_monthly"
        assert event.user_id == user_id
        assert event.event_id == "evt_1"
        assert event.period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert event.period_end == datetime(2025, 2, 1, tzinfo=UTC)
        assert event.occurred_at == datetime.fromtimestamp(1735700000, tz=UTC)

    def test_period_read_from_item(self) -> None:
        event = parse_subscription_event(subscription_event(period_on_item=True))
        assert event is not None
        assert event.period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert event.user_id is None

    def test_deleted_event_is_canceled(self) -> None:
        event = parse_subscription_event(
            subscription_event("customer.subscription.deleted", status="active")
        )
        assert event is not None
        assert event.status == "canceled"

    def test_other_event_types_ignored(self) -> None:
        assert parse_subscription_event(subscription_event("invoice.paid")) is None

    def test_missing_period_rejected(self) -> None:
        payload = subscription_event()
        del payload["data"]["object"]["current_period_end"]
        with pytest.raises(ValueError):
            parse_subscription_event(payload)


def test_stripe_provider_requires_key() -> None:
    with pytest.raises(ValueError):
        StripeBillingProvider("")
