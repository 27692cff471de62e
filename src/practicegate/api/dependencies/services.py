"""Service dependencies for route handlers."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.api.dependencies.database import get_db
from practicegate.billing.entitlements import EntitlementEnforcer
from practicegate.billing.gateway import BillingGateway
from practicegate.billing.provider import BillingProvider
from practicegate.billing.store import SubscriptionStore
from practicegate.core.config import Settings, get_settings
from practicegate.core.locks import KeyedLock
from practicegate.exports.pipeline import ExportDispatcher, ExportPipeline
from practicegate.services import (
    build_enforcer,
    build_export_pipeline,
    build_gateway,
    build_store,
    get_billing_provider,
    get_locks,
)
from practicegate.workers.export_tasks import dispatch_export_job

DbSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_keyed_lock(settings: AppSettings) -> KeyedLock:
    return await get_locks(settings)


def get_provider(settings: AppSettings) -> BillingProvider:
    return get_billing_provider(settings)


def get_export_dispatcher() -> ExportDispatcher:
    return dispatch_export_job


async def get_subscription_store(db: DbSession, settings: AppSettings) -> SubscriptionStore:
    return build_store(db, settings)


async def get_enforcer(
    db: DbSession,
    settings: AppSettings,
    locks: Annotated[KeyedLock, Depends(get_keyed_lock)],
) -> EntitlementEnforcer:
    return build_enforcer(db, locks, settings)


async def get_gateway(
    db: DbSession,
    settings: AppSettings,
    locks: Annotated[KeyedLock, Depends(get_keyed_lock)],
    provider: Annotated[BillingProvider, Depends(get_provider)],
) -> BillingGateway:
    return build_gateway(db, locks, provider, settings)


async def get_export_pipeline(
    db: DbSession,
    settings: AppSettings,
    locks: Annotated[KeyedLock, Depends(get_keyed_lock)],
    dispatcher: Annotated[ExportDispatcher, Depends(get_export_dispatcher)],
) -> ExportPipeline:
    return build_export_pipeline(db, locks, settings, dispatcher)
