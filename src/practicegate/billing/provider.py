"""Billing provider adapters.

``BillingProvider`` is the narrow surface the gateway needs from a payment
provider. Calls are synchronous; the gateway runs them in a worker thread
under a timeout. ``StripeBillingProvider`` implements it with the Stripe SDK.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import stripe

from practicegate.billing.store import ProviderSubscriptionEvent


class ProviderError(Exception):
    """A billing provider call failed."""


class ProviderNotFoundError(Exception):
    """The provider has no such object."""


@dataclass
class ProviderInvoice:
    """Upcoming or issued invoice."""

    id: str | None
    customer_id: str
    status: str
    currency: str
    subtotal: int
    total: int
    amount_due: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    next_payment_attempt: datetime | None = None


@dataclass
class ProviderPaymentMethod:
    """Stored payment method (cards only)."""

    id: str
    card_brand: str | None = None
    card_last4: str | None = None
    card_exp_month: int | None = None
    card_exp_year: int | None = None


@dataclass
class ProviderSubscription:
    id: str
    customer_id: str
    status: str
    cancel_at_period_end: bool = False


class BillingProvider(ABC):
    """Payment provider operations used by the billing gateway."""

    @abstractmethod
    def create_customer(
        self,
        user_id: UUID,
        email: str | None,
        idempotency_key: str,
    ) -> str:
        """Create a customer and return its id."""

    @abstractmethod
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Create a hosted checkout session and return its id."""

    @abstractmethod
    def create_subscription(self, customer_id: str, price_id: str) -> ProviderSubscription:
        """Subscribe a customer to a price."""

    @abstractmethod
    def cancel_subscription(
        self,
        subscription_id: str,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        """Cancel a subscription now or at the end of its period."""

    @abstractmethod
    def get_upcoming_invoice(self, customer_id: str) -> ProviderInvoice | None:
        """Preview the next invoice, or None if nothing is due."""

    @abstractmethod
    def list_payment_methods(self, customer_id: str) -> list[ProviderPaymentMethod]:
        """Cards on file for a customer."""


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeBillingProvider(BillingProvider):
    """Stripe implementation of ``BillingProvider``.

    Stripe exceptions are translated to ``ProviderError`` so the gateway
    never depends on the SDK's error types.
    """

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured")
        self.api_key = api_key

    def create_customer(
        self,
        user_id: UUID,
        email: str | None,
        idempotency_key: str,
    ) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": str(user_id)}}
        if email:
            params["email"] = email
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e
        return session.id

    def create_subscription(self, customer_id: str, price_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.create(
                api_key=self.api_key,
                customer=customer_id,
                items=[{"price": price_id}],
            )
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e
        return self._subscription(subscription)

    def cancel_subscription(
        self,
        subscription_id: str,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        try:
            if at_period_end:
                subscription = stripe.Subscription.modify(
                    subscription_id,
                    api_key=self.api_key,
                    cancel_at_period_end=True,
                )
            else:
                subscription = stripe.Subscription.cancel(
                    subscription_id,
                    api_key=self.api_key,
                )
        except stripe.InvalidRequestError as e:
            raise ProviderNotFoundError(str(e)) from e
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e
        return self._subscription(subscription)

    def get_upcoming_invoice(self, customer_id: str) -> ProviderInvoice | None:
        try:
            invoice = stripe.Invoice.create_preview(
                api_key=self.api_key,
                customer=customer_id,
            )
        except stripe.InvalidRequestError:
            # Raised when the customer has no upcoming invoice
            return None
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e
        return ProviderInvoice(
            id=getattr(invoice, "id", None),
            customer_id=invoice.customer,
            status=getattr(invoice, "status", None) or "draft",
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            total=invoice.total,
            amount_due=invoice.amount_due,
            period_start=_timestamp(getattr(invoice, "period_start", None)),
            period_end=_timestamp(getattr(invoice, "period_end", None)),
            next_payment_attempt=_timestamp(getattr(invoice, "next_payment_attempt", None)),
        )

    def list_payment_methods(self, customer_id: str) -> list[ProviderPaymentMethod]:
        try:
            methods = stripe.PaymentMethod.list(
                api_key=self.api_key,
                customer=customer_id,
                type="card",
            )
        except stripe.StripeError as e:
            raise ProviderError(str(e)) from e

        result = []
        for pm in methods.data:
            card = getattr(pm, "card", None)
            result.append(
                ProviderPaymentMethod(
                    id=pm.id,
                    card_brand=card.brand if card else None,
                    card_last4=card.last4 if card else None,
                    card_exp_month=card.exp_month if card else None,
                    card_exp_year=card.exp_year if card else None,
                )
            )
        return result

    @staticmethod
    def _subscription(subscription: Any) -> ProviderSubscription:
        return ProviderSubscription(
            id=subscription.id,
            customer_id=subscription.customer,
            status=subscription.status,
            cancel_at_period_end=bool(getattr(subscription, "cancel_at_period_end", False)),
        )


# ============================================================================
# Webhook payload parsing
# ============================================================================

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)


def parse_subscription_event(event: dict[str, Any]) -> ProviderSubscriptionEvent | None:
    """Build a reconciliation event from a Stripe webhook payload.

    Returns None for event types that do not describe subscription state.
    Period bounds are read from the subscription, or from its first item on
    API versions that moved them there.
    """
    if event.get("type") not in SUBSCRIPTION_EVENT_TYPES:
        return None

    subscription = event["data"]["object"]
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}

    period_start = subscription.get("current_period_start") or first_item.get(
        "current_period_start"
    )
    period_end = subscription.get("current_period_end") or first_item.get(
        "current_period_end"
    )
    if period_start is None or period_end is None:
        raise ValueError("Subscription event is missing its billing period")

    price = first_item.get("price") or {}
    metadata = subscription.get("metadata") or {}
    raw_user_id = metadata.get("user_id")
    status = subscription["status"]
    if event["type"] == "customer.subscription.deleted":
        status = "canceled"

    return ProviderSubscriptionEvent(
        provider_subscription_id=subscription["id"],
        status=status,
        period_start=_timestamp(period_start),
        period_end=_timestamp(period_end),
        occurred_at=_timestamp(event["created"]),
        price_id=price.get("id"),
        user_id=UUID(raw_user_id) if raw_user_id else None,
        customer_id=subscription.get("customer"),
        event_id=event.get("id"),
    )
