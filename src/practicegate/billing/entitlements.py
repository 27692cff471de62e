"""Entitlement enforcement for metered actions.

The enforcer combines the subscription store, the tier catalog and the
usage meter. ``record_usage`` is the only safe way to spend quota: it
re-checks entitlement and performs a conditional increment under one
per-(user, action) lock, and the increment itself only succeeds while the
stored count is below the quota.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from practicegate.billing.meter import UsageMeter
from practicegate.billing.models import SubscriptionRecord, SubscriptionStatus
from practicegate.billing.periods import Period
from practicegate.billing.store import SubscriptionStore
from practicegate.billing.tier_catalog import (
    DEFAULT_TIER_ID,
    UNLIMITED,
    ActionKind,
    Capability,
    Tier,
    get_tier,
)
from practicegate.core.exceptions import QuotaExceededError
from practicegate.core.locks import KeyedLock
from practicegate.core.logging import LoggerMixin
from practicegate.core.metrics import track_usage_attempt
from practicegate.models.base import utcnow

REASON_SUBSCRIPTION_INACTIVE = "subscription_inactive"
REASON_QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class UsageInfo:
    """Usage of one action in the current period, for display."""

    action_kind: ActionKind
    used: int
    quota: int
    remaining: int
    period_start: datetime
    period_end: datetime
    unlimited: bool
    percentage_used: float
    tier_id: str
    status: SubscriptionStatus

    @classmethod
    def build(
        cls,
        action_kind: ActionKind,
        used: int,
        quota: int,
        period: Period,
        subscription: SubscriptionRecord,
    ) -> UsageInfo:
        unlimited = quota == UNLIMITED
        if unlimited:
            remaining, percentage = UNLIMITED, 0.0
        else:
            remaining = max(quota - used, 0)
            percentage = round(used / quota * 100, 2) if quota > 0 else 100.0
        return cls(
            action_kind=action_kind,
            used=used,
            quota=quota,
            remaining=remaining,
            period_start=period.start,
            period_end=period.end,
            unlimited=unlimited,
            percentage_used=percentage,
            tier_id=subscription.tier_id,
            status=subscription.status,
        )


class EntitlementEnforcer(LoggerMixin):
    """Decides whether a user may perform a metered action and spends quota."""

    def __init__(
        self,
        store: SubscriptionStore,
        meter: UsageMeter,
        locks: KeyedLock,
        tier_independent_actions: Iterable[ActionKind | str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the enforcer.

        Args:
            store: Subscription state store
            meter: Usage meter sharing the store's session
            locks: Keyed lock for the (user, action) serialization domain
            tier_independent_actions: Actions allowed regardless of
                subscription status
            clock: Source of the current time
        """
        self.store = store
        self.meter = meter
        self.locks = locks
        self.tier_independent_actions = frozenset(
            ActionKind(action) for action in tier_independent_actions
        )
        self.clock = clock

    @property
    def db(self):
        return self.store.db

    def _effective_tier(self, subscription: SubscriptionRecord) -> Tier:
        return get_tier(subscription.tier_id)

    def _denial_reason(
        self,
        subscription: SubscriptionRecord,
        action_kind: ActionKind,
    ) -> str | None:
        if action_kind in self.tier_independent_actions:
            return None
        if subscription.status != SubscriptionStatus.ACTIVE:
            return REASON_SUBSCRIPTION_INACTIVE
        return None

    async def can_perform(self, user_id: UUID, action_kind: ActionKind) -> bool:
        """Check whether the user may perform ``action_kind`` now.

        Advisory only: the answer can be stale by the time the caller acts.
        Use ``record_usage`` to spend quota.
        """
        subscription = await self.store.get(user_id)
        if self._denial_reason(subscription, action_kind):
            return False

        quota = self._effective_tier(subscription).quota_for(action_kind)
        if quota == UNLIMITED:
            return True

        period = self.meter.current_period(subscription, self.clock())
        snapshot = await self.meter.get_count(user_id, action_kind, period)
        return snapshot.count < quota

    async def record_usage(self, user_id: UUID, action_kind: ActionKind) -> UsageInfo:
        """Attempt one use of ``action_kind``.

        Check and increment happen under the same lock and the increment is
        conditional on the stored count, so exactly the attempts that were
        under quota at commit time succeed.

        Raises:
            QuotaExceededError: If the subscription is inactive or the
                period's quota is used up.
        """
        async with self.locks.hold(f"usage:{user_id}:{action_kind.value}"):
            subscription = await self.store.get(user_id)
            reason = self._denial_reason(subscription, action_kind)
            tier = self._effective_tier(subscription)
            quota = tier.quota_for(action_kind)
            period = self.meter.current_period(subscription, self.clock())

            if reason == REASON_SUBSCRIPTION_INACTIVE:
                snapshot = await self.meter.get_count(user_id, action_kind, period)
                self.logger.info(
                    "usage_denied",
                    user_id=str(user_id),
                    action_kind=action_kind.value,
                    reason=reason,
                    status=subscription.status.value,
                )
                track_usage_attempt(action_kind.value, reason)
                raise QuotaExceededError(
                    "Subscription is not active",
                    action_kind=action_kind.value,
                    used=snapshot.count,
                    quota=quota,
                    reason=reason,
                )

            if quota == UNLIMITED:
                used = await self.meter.increment(user_id, action_kind, period)
            else:
                new_count = await self.meter.increment_below(
                    user_id, action_kind, period, quota
                )
                if new_count is None:
                    await self.db.commit()
                    self.logger.info(
                        "usage_denied",
                        user_id=str(user_id),
                        action_kind=action_kind.value,
                        reason=REASON_QUOTA_EXCEEDED,
                        quota=quota,
                        tier_id=tier.id,
                    )
                    track_usage_attempt(action_kind.value, REASON_QUOTA_EXCEEDED)
                    raise QuotaExceededError(
                        action_kind=action_kind.value,
                        used=quota,
                        quota=quota,
                        reason=REASON_QUOTA_EXCEEDED,
                    )
                used = new_count

            await self.db.commit()

        track_usage_attempt(action_kind.value, "allowed")
        self.logger.info(
            "usage_recorded",
            user_id=str(user_id),
            action_kind=action_kind.value,
            used=used,
            quota=quota,
            tier_id=tier.id,
        )
        return UsageInfo.build(action_kind, used, quota, period, subscription)

    async def get_usage_info(
        self,
        user_id: UUID,
        action_kind: ActionKind = ActionKind.CONVERSATION,
    ) -> UsageInfo:
        """Read-only usage summary for display."""
        subscription = await self.store.get(user_id)
        quota = self._effective_tier(subscription).quota_for(action_kind)
        period = self.meter.current_period(subscription, self.clock())
        snapshot = await self.meter.get_count(user_id, action_kind, period)
        return UsageInfo.build(action_kind, snapshot.count, quota, period, subscription)

    async def get_all_usage(self, user_id: UUID) -> list[UsageInfo]:
        """Usage summary for every metered action."""
        return [await self.get_usage_info(user_id, action) for action in ActionKind]

    async def has_capability(self, user_id: UUID, capability: Capability) -> bool:
        """Whether the user's current tier unlocks ``capability``.

        Lapsed subscriptions keep only the default tier's capabilities.
        """
        subscription = await self.store.get(user_id)
        if subscription.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED):
            return get_tier(DEFAULT_TIER_ID).has_capability(capability)
        return self._effective_tier(subscription).has_capability(capability)
