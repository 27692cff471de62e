"""Service construction shared by the API and the workers."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.billing.entitlements import EntitlementEnforcer
from practicegate.billing.gateway import BillingGateway
from practicegate.billing.meter import UsageMeter
from practicegate.billing.provider import BillingProvider, StripeBillingProvider
from practicegate.billing.store import SubscriptionStore
from practicegate.billing.tier_catalog import Capability, PriceBook
from practicegate.core.config import Settings, get_settings
from practicegate.core.locks import KeyedLock, LocalKeyedLock, RedisKeyedLock
from practicegate.core.redis import get_redis
from practicegate.exports.authorization import OwnerOrElevatedAuthorizer
from practicegate.exports.pipeline import ExportDispatcher, ExportPipeline

_local_locks: LocalKeyedLock | None = None
_provider: BillingProvider | None = None


async def get_locks(settings: Settings | None = None) -> KeyedLock:
    """Keyed lock for the configured backend."""
    global _local_locks
    settings = settings or get_settings()
    if settings.lock_backend == "redis":
        return RedisKeyedLock(
            await get_redis(),
            timeout=settings.lock_timeout_seconds,
            blocking_timeout=settings.lock_timeout_seconds,
        )
    if _local_locks is None:
        _local_locks = LocalKeyedLock()
    return _local_locks


def get_billing_provider(settings: Settings | None = None) -> BillingProvider:
    """Process-wide Stripe provider."""
    global _provider
    if _provider is None:
        settings = settings or get_settings()
        _provider = StripeBillingProvider(settings.stripe_secret_key)
    return _provider


def get_price_book(settings: Settings | None = None) -> PriceBook:
    settings = settings or get_settings()
    return PriceBook(settings.stripe_price_ids)


def build_store(db: AsyncSession, settings: Settings | None = None) -> SubscriptionStore:
    return SubscriptionStore(db, price_book=get_price_book(settings))


def build_enforcer(
    db: AsyncSession,
    locks: KeyedLock,
    settings: Settings | None = None,
) -> EntitlementEnforcer:
    settings = settings or get_settings()
    return EntitlementEnforcer(
        store=build_store(db, settings),
        meter=UsageMeter(db),
        locks=locks,
        tier_independent_actions=settings.tier_independent_actions,
    )


def build_gateway(
    db: AsyncSession,
    locks: KeyedLock,
    provider: BillingProvider,
    settings: Settings | None = None,
) -> BillingGateway:
    settings = settings or get_settings()
    return BillingGateway(
        provider=provider,
        store=build_store(db, settings),
        locks=locks,
        price_book=get_price_book(settings),
        timeout=settings.billing_timeout_seconds,
        retry_initial_delay=settings.billing_retry_initial_delay,
        retry_max_delay=settings.billing_retry_max_delay,
    )


def build_export_pipeline(
    db: AsyncSession,
    locks: KeyedLock,
    settings: Settings | None = None,
    dispatcher: ExportDispatcher | None = None,
) -> ExportPipeline:
    settings = settings or get_settings()
    enforcer = build_enforcer(db, locks, settings)

    async def capability_check(user_id: UUID, capability: Capability) -> bool:
        return await enforcer.has_capability(user_id, capability)

    required = (
        Capability(settings.export_required_capability)
        if settings.export_required_capability
        else None
    )
    return ExportPipeline(
        db,
        authorizer=OwnerOrElevatedAuthorizer(settings.elevated_users),
        store=enforcer.store,
        locks=locks,
        dispatcher=dispatcher,
        capability_check=capability_check,
        required_capability=required,
        daily_limit=settings.export_daily_limit,
        retention_days=settings.export_retention_days,
        max_list_limit=settings.export_max_list_limit,
    )
