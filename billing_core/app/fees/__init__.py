"""Subscription fee domain package: models, period arithmetic, proration and persistence."""

from .exceptions import FeeValidationError
from .models import (
    BillingBoundaries,
    BillingTime,
    Fee,
    FeeAuditEvent,
    FeeAuditEventType,
    FeeResult,
    FeeType,
    IntervalUnit,
    Invoice,
    Plan,
    ServiceFailure,
    Subscription,
    SubscriptionStatus,
)
from .periods import PeriodResolver, days_between
from .proration import build_context, compute_amount, round_amount
from .service import FeeEventLogger, FeeRepository, SubscriptionFeeService

__all__ = [
    "BillingBoundaries",
    "BillingTime",
    "Fee",
    "FeeAuditEvent",
    "FeeAuditEventType",
    "FeeEventLogger",
    "FeeRepository",
    "FeeResult",
    "FeeType",
    "FeeValidationError",
    "IntervalUnit",
    "Invoice",
    "PeriodResolver",
    "Plan",
    "ServiceFailure",
    "Subscription",
    "SubscriptionFeeService",
    "SubscriptionStatus",
    "build_context",
    "compute_amount",
    "days_between",
    "round_amount",
]
