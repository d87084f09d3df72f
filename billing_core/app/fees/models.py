"""Domain models for subscription fee computation."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so every instant compares safely."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription."""

    PENDING = "pending"
    ACTIVE = "active"
    TERMINATED = "terminated"


class BillingTime(str, Enum):
    """Alignment of billing periods."""

    ANNIVERSARY = "anniversary"
    CALENDAR = "calendar"


class IntervalUnit(str, Enum):
    """Unit of a plan's billing cadence."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class FeeType(str, Enum):
    """Kinds of fee lines. Only subscription fees are created here."""

    SUBSCRIPTION = "subscription"


class Plan(BaseModel):
    """Billing terms shared by every subscription referencing the plan."""

    plan_id: str
    code: str
    amount_cents: int = Field(ge=0)
    amount_currency: str = Field(min_length=3, max_length=3)
    interval_unit: IntervalUnit = IntervalUnit.MONTH
    interval_count: int = Field(default=1, ge=1)
    pay_in_advance: bool = False
    trial_period_days: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("amount_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def has_trial(self) -> bool:
        return bool(self.trial_period_days)


class Subscription(BaseModel):
    """A customer's enrollment in a plan over time."""

    subscription_id: str
    customer_id: str
    plan: Plan
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_time: BillingTime = BillingTime.CALENDAR
    started_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    previous_subscription_id: Optional[str] = None
    next_subscription_id: Optional[str] = None
    upgraded: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("started_at", "terminated_at", "created_at")
    @classmethod
    def _aware_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @model_validator(mode="after")
    def _check_termination(self) -> "Subscription":
        if (self.status == SubscriptionStatus.TERMINATED) != (self.terminated_at is not None):
            raise ValueError("terminated_at must be set if and only if status is terminated")
        return self

    @property
    def is_terminated(self) -> bool:
        return self.status == SubscriptionStatus.TERMINATED

    @property
    def is_anniversary(self) -> bool:
        return self.billing_time == BillingTime.ANNIVERSARY

    @property
    def pay_in_advance(self) -> bool:
        return self.plan.pay_in_advance

    @property
    def trial_end_date(self) -> Optional[date]:
        """Date the free trial ends, ``None`` when the plan has no trial."""

        if not self.plan.has_trial or self.started_at is None:
            return None
        return self.started_at.date() + timedelta(days=self.plan.trial_period_days or 0)

    @property
    def started_in_past(self) -> bool:
        """``True`` for back-dated subscriptions (started before they were created)."""

        if self.started_at is None:
            return False
        return self.started_at.date() < self.created_at.date()


class BillingBoundaries(BaseModel):
    """Period edges supplied by the invoicing run."""

    from_datetime: datetime
    to_datetime: datetime
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("from_datetime", "to_datetime", "timestamp")
    @classmethod
    def _aware_datetimes(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "BillingBoundaries":
        if self.from_datetime > self.to_datetime:
            raise ValueError("from_datetime must not be after to_datetime")
        return self

    @property
    def from_date(self) -> date:
        return self.from_datetime.date()

    @property
    def to_date(self) -> date:
        return self.to_datetime.date()

    def to_properties(self) -> Dict[str, str]:
        """Serialized snapshot stored alongside the fee."""

        return {
            "from_datetime": self.from_datetime.isoformat(),
            "to_datetime": self.to_datetime.isoformat(),
            "timestamp": self.timestamp.isoformat(),
        }


class Invoice(BaseModel):
    """Invoice a subscription fee is attached to."""

    invoice_id: str
    customer_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


class Fee(BaseModel):
    """One monetary line item for one subscription within one invoice."""

    fee_id: str
    invoice_id: str
    subscription_id: str
    amount_cents: int = Field(ge=0)
    amount_currency: str = Field(min_length=3, max_length=3)
    fee_type: FeeType = FeeType.SUBSCRIPTION
    units: int = 1
    properties: Dict[str, str] = Field(default_factory=dict)
    sequential_id: Optional[int] = Field(default=None, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("amount_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


class ServiceFailure(BaseModel):
    """Structured, non-fatal failure reported back to the caller."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class FeeResult(BaseModel):
    """Outcome of a subscription fee computation."""

    fee: Optional[Fee] = None
    already_billed: bool = False
    error: Optional[ServiceFailure] = None

    model_config = ConfigDict(frozen=True)

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def amount_cents(self) -> Optional[int]:
        return self.fee.amount_cents if self.fee else None


class FeeAuditEventType(str, Enum):
    """Audit event categories emitted while billing subscription fees."""

    FEE_CREATED = "fee_created"
    FEE_ALREADY_BILLED = "fee_already_billed"
    FEE_VALIDATION_FAILED = "fee_validation_failed"


class FeeAuditEvent(BaseModel):
    """Structured audit event for analytics and troubleshooting."""

    event_type: FeeAuditEventType
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
