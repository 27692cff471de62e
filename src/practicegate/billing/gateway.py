"""Billing gateway: the only path from the engine to the billing provider."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar
from uuid import UUID, uuid4

from practicegate.billing.models import SubscriptionStatus
from practicegate.billing.provider import (
    BillingProvider,
    ProviderError,
    ProviderInvoice,
    ProviderNotFoundError,
    ProviderPaymentMethod,
    ProviderSubscription,
)
from practicegate.billing.store import SubscriptionStore
from practicegate.billing.tier_catalog import PriceBook
from practicegate.core.exceptions import (
    CustomerNotFoundError,
    NotFoundError,
    ProviderUnavailableError,
)
from practicegate.core.locks import KeyedLock
from practicegate.core.logging import LoggerMixin
from practicegate.core.metrics import track_provider_failure
from practicegate.core.retry import RetryConfig, call_with_retry

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (ProviderError, TimeoutError)


class BillingGateway(LoggerMixin):
    """Narrow contract over the billing provider.

    Provider calls run in a worker thread with a per-attempt timeout.
    Idempotent reads and checkout creation get one retry with backoff;
    subscription mutations are attempted exactly once.
    """

    def __init__(
        self,
        provider: BillingProvider,
        store: SubscriptionStore,
        locks: KeyedLock,
        price_book: PriceBook,
        *,
        timeout: float = 10.0,
        retry_initial_delay: float = 0.5,
        retry_max_delay: float = 2.0,
    ) -> None:
        self.provider = provider
        self.store = store
        self.locks = locks
        self.price_book = price_book
        self.read_retry = RetryConfig(
            max_attempts=2,
            initial_delay=retry_initial_delay,
            max_delay=retry_max_delay,
            timeout=timeout,
            retry_exceptions=RETRYABLE_ERRORS,
        )
        self.no_retry = RetryConfig(
            max_attempts=1,
            timeout=timeout,
            retry_exceptions=RETRYABLE_ERRORS,
        )

    async def _call(
        self,
        operation: str,
        config: RetryConfig,
        func: Callable[..., T],
        *args: Any,
    ) -> T:
        try:
            return await call_with_retry(
                lambda: asyncio.to_thread(func, *args),
                config,
                operation=operation,
            )
        except RETRYABLE_ERRORS as e:
            track_provider_failure(operation)
            self.logger.error(
                "billing_provider_failed",
                operation=operation,
                attempts=config.max_attempts,
                error=repr(e),
            )
            raise ProviderUnavailableError(
                operation=operation,
                attempts=config.max_attempts,
            ) from e

    async def ensure_customer(self, user_id: UUID, email: str | None = None) -> str:
        """Return the user's provider customer id, creating it once.

        Serialized per user; the provider call carries a per-user idempotency
        key and the id is stored with a compare-and-set, so concurrent calls
        converge on a single customer.
        """
        existing = await self.store.customer_id_for(user_id)
        if existing:
            return existing

        async with self.locks.hold(f"customer:{user_id}"):
            existing = await self.store.customer_id_for(user_id)
            if existing:
                return existing

            customer_id = await self._call(
                "create_customer",
                self.read_retry,
                self.provider.create_customer,
                user_id,
                email,
                f"customer-{user_id}",
            )
            stored = await self.store.attach_customer(user_id, customer_id)
            await self.store.db.commit()

        if stored == customer_id:
            self.logger.info("billing_customer_created", user_id=str(user_id))
        return stored

    async def create_checkout_session(
        self,
        user_id: UUID,
        price_id: str,
        success_url: str,
        cancel_url: str,
        email: str | None = None,
    ) -> str:
        """Start a hosted checkout for ``price_id``.

        Raises:
            InvalidTierError: If the price id is not configured.
            ProviderUnavailableError: If the provider fails after one retry.
        """
        tier, cadence = self.price_book.resolve(price_id)
        customer_id = await self.ensure_customer(user_id, email)

        session_id = await self._call(
            "create_checkout_session",
            self.read_retry,
            self.provider.create_checkout_session,
            customer_id,
            price_id,
            success_url,
            cancel_url,
            {"user_id": str(user_id), "tier_id": tier.id, "cadence": cadence.value},
            f"checkout-{user_id}-{uuid4()}",
        )

        self.logger.info(
            "checkout_session_created",
            user_id=str(user_id),
            tier_id=tier.id,
            cadence=cadence.value,
        )
        return session_id

    async def create_subscription(self, customer_id: str, price_id: str) -> str:
        """Subscribe a customer directly. Never retried."""
        self.price_book.resolve(price_id)
        subscription: ProviderSubscription = await self._call(
            "create_subscription",
            self.no_retry,
            self.provider.create_subscription,
            customer_id,
            price_id,
        )
        self.logger.info(
            "provider_subscription_requested",
            provider_subscription_id=subscription.id,
            status=subscription.status,
        )
        return subscription.id

    async def cancel_subscription(
        self,
        provider_subscription_id: str,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        """Cancel at the provider. Never retried.

        The local record follows through reconciliation.
        """
        try:
            subscription = await self._call(
                "cancel_subscription",
                self.no_retry,
                self.provider.cancel_subscription,
                provider_subscription_id,
                at_period_end,
            )
        except ProviderNotFoundError as e:
            raise NotFoundError(
                resource_type="Subscription",
                resource_id=provider_subscription_id,
            ) from e

        self.logger.info(
            "provider_subscription_cancel_requested",
            provider_subscription_id=provider_subscription_id,
            at_period_end=at_period_end,
        )
        return subscription

    async def cancel_user_subscription(
        self,
        user_id: UUID,
        at_period_end: bool = True,
    ) -> ProviderSubscription:
        """Cancel the user's provider-backed subscription.

        Raises:
            NotFoundError: If the user has no provider-backed live subscription.
        """
        record = await self.store.get(user_id)
        if (
            record.provider_subscription_id is None
            or record.status == SubscriptionStatus.CANCELED
        ):
            raise NotFoundError(
                "No active subscription found",
                resource_type="Subscription",
                resource_id=str(user_id),
            )
        return await self.cancel_subscription(record.provider_subscription_id, at_period_end)

    async def get_upcoming_invoice(self, user_id: UUID) -> ProviderInvoice | None:
        """Preview the user's next invoice."""
        customer_id = await self._require_customer(user_id)
        return await self._call(
            "get_upcoming_invoice",
            self.read_retry,
            self.provider.get_upcoming_invoice,
            customer_id,
        )

    async def list_payment_methods(self, user_id: UUID) -> list[ProviderPaymentMethod]:
        """Cards on file for the user."""
        customer_id = await self._require_customer(user_id)
        return await self._call(
            "list_payment_methods",
            self.read_retry,
            self.provider.list_payment_methods,
            customer_id,
        )

    async def _require_customer(self, user_id: UUID) -> str:
        customer_id = await self.store.customer_id_for(user_id)
        if customer_id is None:
            raise CustomerNotFoundError(resource_type="Customer", resource_id=str(user_id))
        return customer_id
