"""Proration strategies for subscription fees.

Each strategy is a pure function of a :class:`ProrationContext`. Strategies are
paired with the predicate that selects them in :data:`PRORATION_RULES`; the
first rule whose predicate matches decides the amount.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Tuple

from .models import BillingBoundaries, Invoice, Plan, Subscription
from .periods import PeriodResolver, days_between

logger = logging.getLogger(__name__)

ROUNDING_MODES = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
}


@dataclass(frozen=True)
class ProrationContext:
    """Everything a strategy needs to price one subscription fee."""

    subscription: Subscription
    boundaries: BillingBoundaries
    invoice: Invoice
    resolver: PeriodResolver
    has_prior_fee: bool = False
    invoice_count: int = 0
    previous_subscription: Optional[Subscription] = None

    @property
    def plan(self) -> Plan:
        return self.subscription.plan


@dataclass(frozen=True)
class ProrationRule:
    name: str
    applies: Callable[[ProrationContext], bool]
    strategy: Callable[[ProrationContext], Decimal]


def build_context(
    subscription: Subscription,
    boundaries: BillingBoundaries,
    *,
    invoice: Invoice,
    has_prior_fee: bool = False,
    invoice_count: int = 0,
    previous_subscription: Optional[Subscription] = None,
) -> ProrationContext:
    """Assemble a context whose resolver points at the period being billed."""

    reference = min(boundaries.timestamp, boundaries.to_datetime)
    return ProrationContext(
        subscription=subscription,
        boundaries=boundaries,
        invoice=invoice,
        resolver=PeriodResolver(subscription, reference),
        has_prior_fee=has_prior_fee,
        invoice_count=invoice_count,
        previous_subscription=previous_subscription,
    )


def _trial_adjusted_from(context: ProrationContext) -> Optional[date]:
    """First billable day of the period, ``None`` when the trial covers all of it."""

    from_date = context.boundaries.from_date
    to_date = context.boundaries.to_date
    trial_end = context.subscription.trial_end_date
    if trial_end is None:
        return from_date
    if trial_end >= to_date:
        return None
    if from_date < trial_end < to_date:
        return trial_end
    return from_date


def should_compute_terminated_amount(context: ProrationContext) -> bool:
    subscription = context.subscription
    if not subscription.is_terminated:
        return False
    if context.plan.pay_in_advance:
        return False
    return subscription.upgraded or subscription.next_subscription_id is None


def should_compute_upgraded_amount(context: ProrationContext) -> bool:
    if not context.subscription.previous_subscription_id:
        return False
    if context.invoice_count > 1:
        return False
    previous = context.previous_subscription
    return previous is not None and previous.upgraded


def should_use_full_amount(context: ProrationContext) -> bool:
    subscription = context.subscription
    if context.plan.pay_in_advance and subscription.is_anniversary:
        return True
    if context.has_prior_fee:
        return True
    if (
        subscription.started_in_past
        and subscription.started_at is not None
        and subscription.started_at.date() >= context.resolver.previous_period_start
    ):
        return True
    return subscription.started_in_past and context.plan.pay_in_advance


def terminated_amount(context: ProrationContext) -> Decimal:
    """Days used by a pay-in-arrears subscription up to its termination."""

    from_date = _trial_adjusted_from(context)
    if from_date is None:
        return Decimal(0)
    days = days_between(from_date, context.boundaries.to_date)
    return days * context.resolver.single_day_price()


def upgraded_amount(context: ProrationContext) -> Decimal:
    """Days between the upgrade and the end of the period.

    Unused days of the replaced plan are credited elsewhere.
    """

    to_date = context.boundaries.to_date
    from_date = _trial_adjusted_from(context)
    if from_date is None:
        from_date = to_date + timedelta(days=1)
    days = days_between(from_date, to_date)
    return days * context.resolver.single_day_price()


def full_period_amount(context: ProrationContext) -> Decimal:
    from_date = context.boundaries.from_date
    to_date = context.boundaries.to_date
    trial_end = context.subscription.trial_end_date

    if trial_end is not None:
        if trial_end >= to_date:
            return Decimal(0)
        if from_date < trial_end < to_date:
            days = days_between(trial_end, to_date)
            return days * context.resolver.single_day_price(optional_from_date=from_date)

    return Decimal(context.plan.amount_cents)


def first_subscription_amount(context: ProrationContext) -> Decimal:
    """Days since the start of a new (or downgraded) subscription."""

    from_date = _trial_adjusted_from(context)
    if from_date is None:
        return Decimal(0)
    days = days_between(from_date, context.boundaries.to_date)
    return days * context.resolver.single_day_price()


PRORATION_RULES: Tuple[ProrationRule, ...] = (
    ProrationRule("terminated", should_compute_terminated_amount, terminated_amount),
    ProrationRule("upgraded", should_compute_upgraded_amount, upgraded_amount),
    ProrationRule("full_period", should_use_full_amount, full_period_amount),
    ProrationRule("first_subscription", lambda context: True, first_subscription_amount),
)


def select_rule(context: ProrationContext) -> ProrationRule:
    """Return the first rule whose predicate matches."""

    for rule in PRORATION_RULES:
        if rule.applies(context):
            return rule
    # The last rule always applies.
    return PRORATION_RULES[-1]


def compute_amount(context: ProrationContext) -> Decimal:
    """Unrounded amount bounded to ``[0, plan.amount_cents]``."""

    rule = select_rule(context)
    amount = rule.strategy(context)
    logger.debug(
        "Proration rule %s selected subscription=%s amount=%s",
        rule.name,
        context.subscription.subscription_id,
        amount,
    )
    return min(max(amount, Decimal(0)), Decimal(context.plan.amount_cents))


def round_amount(amount: Decimal, rounding: str = "half_up") -> int:
    """Round a fractional amount to whole minor currency units."""

    try:
        mode = ROUNDING_MODES[rounding]
    except KeyError as exc:
        raise ValueError(f"Unsupported rounding mode {rounding!r}") from exc
    return int(amount.quantize(Decimal(1), rounding=mode))


__all__ = [
    "PRORATION_RULES",
    "ProrationContext",
    "ProrationRule",
    "ROUNDING_MODES",
    "build_context",
    "compute_amount",
    "first_subscription_amount",
    "full_period_amount",
    "round_amount",
    "select_rule",
    "should_compute_terminated_amount",
    "should_compute_upgraded_amount",
    "should_use_full_amount",
    "terminated_amount",
    "upgraded_amount",
]
