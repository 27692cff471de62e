"""Billing period arithmetic."""

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime

from practicegate.billing.tier_catalog import BillingCadence


@dataclass(frozen=True)
class Period:
    """Half-open ``[start, end)`` window."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        """Whether ``moment`` is inside the window."""
        return self.start <= moment < self.end


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole months, clamping the day to the month length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calendar_month(moment: datetime) -> Period:
    """The UTC calendar month containing ``moment``."""
    moment = moment.astimezone(UTC)
    start = datetime(moment.year, moment.month, 1, tzinfo=UTC)
    return Period(start=start, end=add_months(start, 1))


def cycle_from(start: datetime, cadence: BillingCadence) -> Period:
    """One billing cycle beginning at ``start``."""
    months = 12 if cadence == BillingCadence.ANNUAL else 1
    return Period(start=start, end=add_months(start, months))
