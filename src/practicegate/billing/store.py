"""Subscription state store: the internal record of every user's plan."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.billing.models import SubscriptionRecord, SubscriptionStatus
from practicegate.billing.periods import cycle_from
from practicegate.billing.tier_catalog import (
    DEFAULT_TIER_ID,
    BillingCadence,
    PriceBook,
    is_known_tier,
)
from practicegate.core.exceptions import ConflictError, InvalidTierError
from practicegate.core.logging import LoggerMixin
from practicegate.models.base import utcnow
from practicegate.models.statements import insert_ignore

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Tie-break for distinct events sharing an ordering key
_STATUS_RANK: dict[SubscriptionStatus, int] = {
    SubscriptionStatus.NONE: 0,
    SubscriptionStatus.PAST_DUE: 1,
    SubscriptionStatus.ACTIVE: 2,
    SubscriptionStatus.CANCELED: 3,
}

PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _column_matches(column: Any, value: object) -> Any:
    return column.is_(None) if value is None else column == value


def map_provider_status(status: str | SubscriptionStatus) -> SubscriptionStatus:
    """Translate a provider subscription status to the internal status.

    Raises:
        ValueError: If the status is not recognised.
    """
    if isinstance(status, SubscriptionStatus):
        return status
    mapped = PROVIDER_STATUS_MAP.get(status)
    if mapped is None:
        raise ValueError(f"Unrecognised provider subscription status: {status}")
    return mapped


class ReconcileOutcome(str, enum.Enum):
    """What a reconciliation event did to the store."""

    APPLIED = "applied"
    CREATED = "created"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN = "unknown"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class ProviderSubscriptionEvent:
    """Subscription state reported by the billing provider.

    ``occurred_at`` is the provider's own timestamp and is the ordering key;
    delivery order is never trusted.
    """

    provider_subscription_id: str
    status: str | SubscriptionStatus
    period_start: datetime
    period_end: datetime
    occurred_at: datetime
    price_id: str | None = None
    user_id: UUID | None = None
    customer_id: str | None = None
    event_id: str | None = None

    @property
    def ordering_key(self) -> tuple[datetime, datetime]:
        return (self.occurred_at, self.period_end)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of ``upsert_from_provider``."""

    outcome: ReconcileOutcome
    record: SubscriptionRecord | None = None

    @property
    def changed(self) -> bool:
        return self.outcome in (ReconcileOutcome.APPLIED, ReconcileOutcome.CREATED)


class SubscriptionStore(LoggerMixin):
    """Authoritative internal subscription state.

    Mutated only by provider reconciliation, manual tier assignment and
    customer attachment. Canceled records are kept for history; a user who
    resubscribes gets a new record.
    """

    def __init__(
        self,
        db: AsyncSession,
        price_book: PriceBook | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            db: Database session
            price_book: Resolves provider price ids to tiers during reconciliation
            clock: Source of the current time
        """
        self.db = db
        self.price_book = price_book or PriceBook({})
        self.clock = clock

    async def get(self, user_id: UUID) -> SubscriptionRecord:
        """Current subscription for a user.

        Returns the live record, or a transient free-tier record with status
        ``none`` when the user has never subscribed. Never returns None.
        """
        record = await self._get_live(user_id)
        if record is not None:
            return record
        return SubscriptionRecord(
            user_id=user_id,
            tier_id=DEFAULT_TIER_ID,
            status=SubscriptionStatus.NONE,
            cadence=BillingCadence.MONTHLY,
        )

    async def history(self, user_id: UUID) -> list[SubscriptionRecord]:
        """All records for a user, newest first."""
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc()),
        )
        return list(result.scalars().all())

    async def get_by_provider_id(
        self,
        provider_subscription_id: str,
    ) -> SubscriptionRecord | None:
        """Record bound to a provider subscription id."""
        result = await self.db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.provider_subscription_id == provider_subscription_id,
            ).execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def customer_id_for(self, user_id: UUID) -> str | None:
        """Provider customer id for a user, from the newest record that has one."""
        result = await self.db.execute(
            select(SubscriptionRecord.provider_customer_id)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.provider_customer_id.is_not(None),
            )
            .order_by(
                SubscriptionRecord.live_key.is_(None),
                SubscriptionRecord.created_at.desc(),
            )
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def attach_customer(self, user_id: UUID, customer_id: str) -> str:
        """Store ``customer_id`` for the user unless one is already stored.

        Compare-and-set: the first writer wins and every caller gets the
        stored id back.

        Returns:
            The customer id now on record.
        """
        live = await self._get_live(user_id)
        if live is None:
            await insert_ignore(
                self.db,
                SubscriptionRecord,
                {
                    "user_id": user_id,
                    "live_key": user_id,
                    "tier_id": DEFAULT_TIER_ID,
                    "status": SubscriptionStatus.NONE,
                    "cadence": BillingCadence.MONTHLY,
                    "provider_customer_id": customer_id,
                },
            )

        await self.db.execute(
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.live_key == user_id,
                SubscriptionRecord.provider_customer_id.is_(None),
            )
            .values(provider_customer_id=customer_id, updated_at=self.clock()),
        )

        record = await self._get_live(user_id)
        stored = record.provider_customer_id if record else None
        if stored != customer_id:
            self.logger.info(
                "customer_attach_lost_race",
                user_id=str(user_id),
                stored_customer_id=stored,
            )
        else:
            self.logger.info("customer_attached", user_id=str(user_id))
        return stored or customer_id

    async def set_tier(
        self,
        user_id: UUID,
        tier_id: str,
        cadence: BillingCadence = BillingCadence.MONTHLY,
    ) -> SubscriptionRecord:
        """Manually assign a tier, independent of the billing provider.

        Activates the user's live record (creating it if needed) with a fresh
        billing cycle when it had none.

        Raises:
            InvalidTierError: If ``tier_id`` is not in the catalog.
        """
        if not is_known_tier(tier_id):
            raise InvalidTierError(field="tier_id", value=tier_id)

        now = self.clock()
        cycle = cycle_from(now, cadence)
        live = await self._get_live(user_id)
        if live is None:
            inserted = await insert_ignore(
                self.db,
                SubscriptionRecord,
                {
                    "user_id": user_id,
                    "live_key": user_id,
                    "tier_id": tier_id,
                    "status": SubscriptionStatus.ACTIVE,
                    "cadence": cadence,
                    "current_period_start": cycle.start,
                    "current_period_end": cycle.end,
                    "provider_customer_id": await self.customer_id_for(user_id),
                },
            )
            if inserted:
                record = await self._require_live(user_id)
                self.logger.info(
                    "tier_assigned",
                    user_id=str(user_id),
                    tier_id=tier_id,
                    cadence=cadence.value,
                    created=True,
                )
                return record
            live = await self._require_live(user_id)

        values: dict[str, object] = {
            "tier_id": tier_id,
            "cadence": cadence,
            "status": SubscriptionStatus.ACTIVE,
            "updated_at": now,
        }
        if not live.period_contains(now):
            values["current_period_start"] = cycle.start
            values["current_period_end"] = cycle.end

        await self.db.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.id == live.id)
            .values(**values),
        )
        record = await self._require_live(user_id)

        self.logger.info(
            "tier_assigned",
            user_id=str(user_id),
            tier_id=tier_id,
            cadence=cadence.value,
            previous_tier_id=live.tier_id,
            created=False,
        )
        return record

    async def upsert_from_provider(
        self,
        event: ProviderSubscriptionEvent,
    ) -> ReconcileResult:
        """Apply a provider subscription event.

        Idempotent under at-least-once delivery: events whose ordering key
        ``(occurred_at, period_end)`` is before the stored one are no-ops, as
        are redeliveries, same-key events that would move the status
        backwards, and anything after cancellation. Events for unknown
        subscription ids without a ``user_id`` to bind them are logged and
        dropped.
        """
        try:
            status = map_provider_status(event.status)
        except ValueError:
            self.logger.warning(
                "reconcile_unrecognised_status",
                provider_subscription_id=event.provider_subscription_id,
                status=str(event.status),
            )
            return ReconcileResult(ReconcileOutcome.UNKNOWN)

        record = await self.get_by_provider_id(event.provider_subscription_id)
        if record is None:
            if event.user_id is None:
                self.logger.warning(
                    "reconcile_unknown_subscription",
                    provider_subscription_id=event.provider_subscription_id,
                    event_id=event.event_id,
                )
                return ReconcileResult(ReconcileOutcome.UNKNOWN)
            return await self._bind_subscription(event, status)

        outcome = self._ordering_outcome(record, event, status)
        if outcome is not None:
            self.logger.info(
                "reconcile_event_ignored",
                provider_subscription_id=event.provider_subscription_id,
                outcome=outcome.value,
                event_id=event.event_id,
            )
            return ReconcileResult(outcome, record)

        if record.status == SubscriptionStatus.CANCELED:
            self.logger.info(
                "reconcile_event_after_cancel",
                provider_subscription_id=event.provider_subscription_id,
                status=status.value,
                event_id=event.event_id,
            )
            return ReconcileResult(ReconcileOutcome.TERMINAL, record)

        values = self._event_values(event, status, record.user_id)
        if record.live_key is None and values["live_key"] is not None:
            # History record coming back to life: it needs the live slot
            live = await self._get_live(record.user_id)
            if live is not None and live.id != record.id:
                if self._may_supersede(live, event):
                    await self._supersede(live, event)
                else:
                    values["live_key"] = None

        result = await self.db.execute(
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.id == record.id,
                _column_matches(SubscriptionRecord.provider_updated_at, record.provider_updated_at),
                _column_matches(SubscriptionRecord.provider_event_id, record.provider_event_id),
            )
            .values(**values),
        )
        if not result.rowcount:
            self.logger.info(
                "reconcile_lost_race",
                provider_subscription_id=event.provider_subscription_id,
                event_id=event.event_id,
            )
            return ReconcileResult(ReconcileOutcome.STALE, record)

        await self.db.refresh(record)
        self.logger.info(
            "subscription_reconciled",
            user_id=str(record.user_id),
            provider_subscription_id=event.provider_subscription_id,
            status=record.status.value,
            tier_id=record.tier_id,
            event_id=event.event_id,
        )
        return ReconcileResult(ReconcileOutcome.APPLIED, record)

    async def _bind_subscription(
        self,
        event: ProviderSubscriptionEvent,
        status: SubscriptionStatus,
    ) -> ReconcileResult:
        """Attach a first-seen provider subscription to its user.

        A canceled arrival, or one older than the live provider subscription,
        is stored as history and leaves the live record alone.
        """
        user_id = event.user_id
        if user_id is None:
            raise ValueError("Binding a provider subscription requires a user_id")
        values = self._event_values(event, status, user_id)
        canceled = status == SubscriptionStatus.CANCELED

        live = await self._get_live(user_id)
        if live is not None and live.provider_subscription_id is None and not canceled:
            result = await self.db.execute(
                update(SubscriptionRecord)
                .where(
                    SubscriptionRecord.id == live.id,
                    SubscriptionRecord.provider_subscription_id.is_(None),
                )
                .values(provider_subscription_id=event.provider_subscription_id, **values),
            )
            if not result.rowcount:
                return ReconcileResult(ReconcileOutcome.DUPLICATE)
            await self.db.refresh(live)
            self.logger.info(
                "provider_subscription_bound",
                user_id=str(user_id),
                provider_subscription_id=event.provider_subscription_id,
                status=live.status.value,
            )
            return ReconcileResult(ReconcileOutcome.CREATED, live)

        if live is not None and not canceled:
            if self._may_supersede(live, event):
                await self._supersede(live, event)
            else:
                values["live_key"] = None
                self.logger.info(
                    "provider_subscription_older_than_live",
                    user_id=str(user_id),
                    live_provider_subscription_id=live.provider_subscription_id,
                    provider_subscription_id=event.provider_subscription_id,
                )

        customer_id = event.customer_id or await self.customer_id_for(user_id)
        inserted = await insert_ignore(
            self.db,
            SubscriptionRecord,
            {
                "user_id": user_id,
                "provider_subscription_id": event.provider_subscription_id,
                "provider_customer_id": customer_id,
                **values,
            },
        )
        if not inserted:
            self.logger.info(
                "reconcile_concurrent_bind",
                provider_subscription_id=event.provider_subscription_id,
            )
            return ReconcileResult(ReconcileOutcome.DUPLICATE)

        record = await self.get_by_provider_id(event.provider_subscription_id)
        self.logger.info(
            "provider_subscription_created",
            user_id=str(user_id),
            provider_subscription_id=event.provider_subscription_id,
            status=status.value,
        )
        return ReconcileResult(ReconcileOutcome.CREATED, record)

    @staticmethod
    def _ordering_outcome(
        record: SubscriptionRecord,
        event: ProviderSubscriptionEvent,
        status: SubscriptionStatus,
    ) -> ReconcileOutcome | None:
        """``stale`` or ``duplicate`` when the event must not be applied.

        Distinct events can share an ordering key (provider timestamps have
        one-second resolution); the tie goes to the event whose status is not
        behind the stored one.
        """
        if record.provider_updated_at is None:
            return None
        stored_key = (record.provider_updated_at, record.current_period_end or _EPOCH)
        if event.ordering_key < stored_key:
            return ReconcileOutcome.STALE
        if event.ordering_key > stored_key:
            return None

        if event.event_id is not None and event.event_id == record.provider_event_id:
            return ReconcileOutcome.DUPLICATE
        if event.event_id is None and status == record.status:
            return ReconcileOutcome.DUPLICATE
        if _STATUS_RANK[status] < _STATUS_RANK[record.status]:
            return ReconcileOutcome.STALE
        return None

    @staticmethod
    def _may_supersede(live: SubscriptionRecord, event: ProviderSubscriptionEvent) -> bool:
        return live.provider_updated_at is None or event.occurred_at > live.provider_updated_at

    async def _supersede(
        self,
        live: SubscriptionRecord,
        event: ProviderSubscriptionEvent,
    ) -> None:
        """Cancel ``live`` so the event's subscription can take the live slot."""
        now = self.clock()
        await self.db.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.id == live.id)
            .values(
                status=SubscriptionStatus.CANCELED,
                live_key=None,
                canceled_at=now,
                updated_at=now,
            ),
        )
        self.logger.info(
            "subscription_superseded",
            user_id=str(live.user_id),
            previous_provider_subscription_id=live.provider_subscription_id,
            provider_subscription_id=event.provider_subscription_id,
        )

    def _event_values(
        self,
        event: ProviderSubscriptionEvent,
        status: SubscriptionStatus,
        user_id: UUID,
    ) -> dict[str, object]:
        now = self.clock()
        values: dict[str, object] = {
            "status": status,
            "current_period_start": event.period_start,
            "current_period_end": event.period_end,
            "provider_updated_at": event.occurred_at,
            "provider_event_id": event.event_id,
            "live_key": None if status == SubscriptionStatus.CANCELED else user_id,
            "updated_at": now,
        }
        if status == SubscriptionStatus.CANCELED:
            values["canceled_at"] = now
        if event.price_id and self.price_book.is_known_price(event.price_id):
            tier, cadence = self.price_book.resolve(event.price_id)
            values["tier_id"] = tier.id
            values["cadence"] = cadence
        elif event.price_id:
            self.logger.warning(
                "reconcile_unknown_price",
                provider_subscription_id=event.provider_subscription_id,
                price_id=event.price_id,
            )
        return values

    async def _get_live(self, user_id: UUID) -> SubscriptionRecord | None:
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.live_key == user_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def _require_live(self, user_id: UUID) -> SubscriptionRecord:
        record = await self._get_live(user_id)
        if record is None:
            raise ConflictError("Subscription was canceled concurrently")
        return record


__all__ = [
    "PROVIDER_STATUS_MAP",
    "ProviderSubscriptionEvent",
    "ReconcileOutcome",
    "ReconcileResult",
    "SubscriptionStore",
    "map_provider_status",
]
