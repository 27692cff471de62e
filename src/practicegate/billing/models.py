"""Subscription and usage models."""

import enum
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Enum, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from practicegate.billing.tier_catalog import DEFAULT_TIER_ID, BillingCadence
from practicegate.models.base import Base, TimestampMixin, UTCDateTime


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum."""

    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class SubscriptionRecord(Base, TimestampMixin):
    """A user's subscription to a catalog tier.

    ``live_key`` equals ``user_id`` while the record is not canceled and is
    cleared on cancellation; its unique index enforces at most one live
    record per user while canceled history is kept.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )
    live_key: Mapped[UUID | None] = mapped_column(
        Uuid(),
        nullable=True,
        unique=True,
    )
    tier_id: Mapped[str] = mapped_column(
        String(32),
        default=DEFAULT_TIER_ID,
        nullable=False,
    )
    provider_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, values_callable=lambda x: [e.value for e in x]),
        default=SubscriptionStatus.NONE,
        nullable=False,
        index=True,
    )
    cadence: Mapped[BillingCadence] = mapped_column(
        Enum(BillingCadence, values_callable=lambda x: [e.value for e in x]),
        default=BillingCadence.MONTHLY,
        nullable=False,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    provider_updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    provider_event_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    canceled_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        """Check if the subscription currently grants its tier."""
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_persisted(self) -> bool:
        """False for the transient default record returned to unknown users."""
        return self.created_at is not None

    def period_contains(self, moment: datetime) -> bool:
        """Whether ``moment`` falls in the stored billing period."""
        if self.current_period_start is None or self.current_period_end is None:
            return False
        return self.current_period_start <= moment < self.current_period_end


class UsageRecord(Base, TimestampMixin):
    """Counter of one metered action for one user in one period."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "action_kind", "period_start"),
        Index("ix_usage_records_user_action", "user_id", "action_kind"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(),
        nullable=False,
    )
    action_kind: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    period_start: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    period_end: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    count: Mapped[int] = mapped_column(
        default=0,
        nullable=False,
    )
