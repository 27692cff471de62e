"""Usage meter: per-(user, action, period) atomic counters."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.billing.models import SubscriptionRecord, UsageRecord
from practicegate.billing.periods import Period, calendar_month
from practicegate.billing.tier_catalog import ActionKind
from practicegate.core.logging import LoggerMixin
from practicegate.models.base import utcnow
from practicegate.models.statements import insert_ignore


@dataclass(frozen=True)
class UsageSnapshot:
    """Count of one action in one period."""

    count: int
    period_start: datetime
    period_end: datetime


class UsageMeter(LoggerMixin):
    """Counts metered actions.

    Rows are created lazily with insert-or-ignore, so concurrent first touch
    of a new period produces exactly one row, and every increment is a
    single ``count = count + 1`` statement. Counts are never decremented.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.clock = clock

    def current_period(
        self,
        subscription: SubscriptionRecord,
        now: datetime | None = None,
    ) -> Period:
        """Quota window for ``subscription`` at ``now``.

        The stored billing period when it contains ``now``, otherwise the
        UTC calendar month. Free and lapsed users therefore reset monthly.
        """
        now = now or self.clock()
        start = subscription.current_period_start
        end = subscription.current_period_end
        if start is not None and end is not None and start <= now < end:
            return Period(start=start, end=end)
        return calendar_month(now)

    async def increment(
        self,
        user_id: UUID,
        action_kind: ActionKind,
        period: Period,
    ) -> int:
        """Unconditionally add one use and return the new count."""
        await self._ensure_row(user_id, action_kind, period)
        result = await self.db.execute(
            update(UsageRecord)
            .where(*self._row_filter(user_id, action_kind, period))
            .values(count=UsageRecord.count + 1, updated_at=self.clock())
            .returning(UsageRecord.count),
        )
        count = result.scalar_one()

        self.logger.debug(
            "usage_incremented",
            user_id=str(user_id),
            action_kind=action_kind.value,
            count=count,
        )
        return count

    async def increment_below(
        self,
        user_id: UUID,
        action_kind: ActionKind,
        period: Period,
        limit: int,
    ) -> int | None:
        """Add one use only while the count is below ``limit``.

        Returns:
            The new count, or None if the limit was already reached.
        """
        await self._ensure_row(user_id, action_kind, period)
        result = await self.db.execute(
            update(UsageRecord)
            .where(
                *self._row_filter(user_id, action_kind, period),
                UsageRecord.count < limit,
            )
            .values(count=UsageRecord.count + 1, updated_at=self.clock())
            .returning(UsageRecord.count),
        )
        count = result.scalar_one_or_none()

        if count is None:
            self.logger.info(
                "usage_limit_reached",
                user_id=str(user_id),
                action_kind=action_kind.value,
                limit=limit,
            )
        return count

    async def get_count(
        self,
        user_id: UUID,
        action_kind: ActionKind,
        period: Period,
    ) -> UsageSnapshot:
        """Count for ``period``; zero if the period was never touched."""
        result = await self.db.execute(
            select(UsageRecord.count).where(
                *self._row_filter(user_id, action_kind, period),
            ),
        )
        count = result.scalar_one_or_none() or 0
        return UsageSnapshot(count=count, period_start=period.start, period_end=period.end)

    async def history(
        self,
        user_id: UUID,
        action_kind: ActionKind,
    ) -> list[UsageSnapshot]:
        """Every retained period for the action, newest first."""
        result = await self.db.execute(
            select(UsageRecord)
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.action_kind == action_kind.value,
            )
            .order_by(UsageRecord.period_start.desc()),
        )
        return [
            UsageSnapshot(
                count=row.count,
                period_start=row.period_start,
                period_end=row.period_end,
            )
            for row in result.scalars().all()
        ]

    async def _ensure_row(
        self,
        user_id: UUID,
        action_kind: ActionKind,
        period: Period,
    ) -> None:
        created = await insert_ignore(
            self.db,
            UsageRecord,
            {
                "user_id": user_id,
                "action_kind": action_kind.value,
                "period_start": period.start,
                "period_end": period.end,
                "count": 0,
            },
        )
        if created:
            self.logger.info(
                "usage_period_started",
                user_id=str(user_id),
                action_kind=action_kind.value,
                period_start=period.start.isoformat(),
                period_end=period.end.isoformat(),
            )

    @staticmethod
    def _row_filter(user_id: UUID, action_kind: ActionKind, period: Period) -> tuple:
        return (
            UsageRecord.user_id == user_id,
            UsageRecord.action_kind == action_kind.value,
            UsageRecord.period_start == period.start,
        )
