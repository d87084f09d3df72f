"""Billing period arithmetic for subscriptions.

Periods are laid out from an anchor date in whole cadence units
(``plan.interval_count`` times ``plan.interval_unit``). Anniversary billing
anchors on the subscription start date; calendar billing anchors on the
first of January (month and year cadences) or on a Monday (week cadences).
All period ends are inclusive.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from .models import IntervalUnit, Subscription


def days_between(from_date: date, to_date: date) -> int:
    """Number of billable days, counting ``to_date`` inclusively."""

    return ((to_date + timedelta(days=1)) - from_date).days


class PeriodResolver:
    """Resolves the billing period a reference instant falls into."""

    def __init__(self, subscription: Subscription, timestamp: datetime) -> None:
        self._subscription = subscription
        self._plan = subscription.plan
        self._reference = timestamp.date()
        self._anchor = self._compute_anchor()
        self._index = self._locate_period(self._reference)

    @property
    def reference_date(self) -> date:
        return self._reference

    @property
    def current_period_start(self) -> date:
        return self._shift(self._index)

    @property
    def current_period_end(self) -> date:
        return self._shift(self._index + 1) - timedelta(days=1)

    @property
    def previous_period_start(self) -> date:
        return self._shift(self._index - 1)

    @property
    def next_period_start(self) -> date:
        return self._shift(self._index + 1)

    def duration_in_days(self, from_date: Optional[date] = None) -> int:
        """Length of the current period, or of ``from_date`` through its end."""

        start = from_date or self.current_period_start
        return days_between(start, self.current_period_end)

    def single_day_price(self, optional_from_date: Optional[date] = None) -> Decimal:
        """Unrounded price of one day in the current period."""

        duration = self.duration_in_days(optional_from_date)
        if duration <= 0:
            return Decimal(0)
        return Decimal(self._plan.amount_cents) / Decimal(duration)

    def _compute_anchor(self) -> date:
        started_at = self._subscription.started_at or self._subscription.created_at
        anchor = started_at.date()
        if not self._subscription.is_anniversary:
            unit = self._plan.interval_unit
            if unit in (IntervalUnit.MONTH, IntervalUnit.YEAR):
                return date(anchor.year, 1, 1)
            if unit == IntervalUnit.WEEK:
                return anchor - timedelta(days=anchor.weekday())
        return anchor

    def _shift(self, periods: int) -> date:
        steps = periods * self._plan.interval_count
        unit = self._plan.interval_unit
        if unit == IntervalUnit.DAY:
            return self._anchor + timedelta(days=steps)
        if unit == IntervalUnit.WEEK:
            return self._anchor + timedelta(weeks=steps)
        if unit == IntervalUnit.MONTH:
            return self._anchor + relativedelta(months=steps)
        return self._anchor + relativedelta(years=steps)

    def _locate_period(self, reference: date) -> int:
        unit = self._plan.interval_unit
        count = self._plan.interval_count
        if unit in (IntervalUnit.DAY, IntervalUnit.WEEK):
            length = count * (7 if unit == IntervalUnit.WEEK else 1)
            index = (reference - self._anchor).days // length
        else:
            months = (reference.year - self._anchor.year) * 12 + reference.month - self._anchor.month
            index = months // (count * (12 if unit == IntervalUnit.YEAR else 1))

        # Month clamping can leave the estimate one period off.
        while self._shift(index) > reference:
            index -= 1
        while self._shift(index + 1) <= reference:
            index += 1
        return index


__all__ = ["PeriodResolver", "days_between"]
