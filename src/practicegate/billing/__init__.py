"""Subscription entitlement and usage metering."""

from practicegate.billing.entitlements import EntitlementEnforcer, UsageInfo
from practicegate.billing.gateway import BillingGateway
from practicegate.billing.meter import UsageMeter, UsageSnapshot
from practicegate.billing.models import SubscriptionRecord, SubscriptionStatus, UsageRecord
from practicegate.billing.store import (
    ProviderSubscriptionEvent,
    ReconcileOutcome,
    SubscriptionStore,
)
from practicegate.billing.tier_catalog import (
    TIER_CATALOG,
    ActionKind,
    BillingCadence,
    Capability,
    PriceBook,
    Tier,
    get_tier,
    list_tiers,
)

__all__ = [
    "TIER_CATALOG",
    "ActionKind",
    "BillingCadence",
    "BillingGateway",
    "Capability",
    "EntitlementEnforcer",
    "PriceBook",
    "ProviderSubscriptionEvent",
    "ReconcileOutcome",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionStore",
    "Tier",
    "UsageInfo",
    "UsageMeter",
    "UsageRecord",
    "UsageSnapshot",
    "get_tier",
    "list_tiers",
]
