"""Service computing and persisting subscription fees."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ContextManager, Optional, Protocol
from uuid import uuid4

from ..sequencing.generator import SequenceGenerator
from ..sequencing.models import SequenceScope
from .exceptions import FeeValidationError
from .models import (
    BillingBoundaries,
    Fee,
    FeeAuditEvent,
    FeeAuditEventType,
    FeeResult,
    FeeType,
    Invoice,
    ServiceFailure,
    Subscription,
)
from .proration import build_context, compute_amount, round_amount

logger = logging.getLogger(__name__)

FEE_SEQUENCE_ENTITY = "fee"


class FeeRepository(Protocol):
    """Persistence operations required by the subscription fee service."""

    def transaction(self) -> ContextManager[None]:
        ...

    def lock_subscription_fee(self, invoice_id: str, subscription_id: str) -> None:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def find_subscription_fee(self, invoice_id: str, subscription_id: str) -> Optional[Fee]:
        ...

    def has_fee_before(self, subscription_id: str, before: datetime) -> bool:
        ...

    def count_invoices(self, subscription_id: str) -> int:
        ...

    def create_fee(self, fee: Fee) -> Fee:
        ...


class FeeEventLogger(Protocol):
    """Captures structured fee audit events."""

    def log(self, event: FeeAuditEvent) -> None:
        ...


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class SubscriptionFeeService:
    """Bills one subscription fee per (invoice, subscription) pair."""

    repository: FeeRepository
    event_logger: FeeEventLogger
    sequence_generator: Optional[SequenceGenerator] = None
    rounding: str = "half_up"

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(
        self,
        invoice: Optional[Invoice],
        subscription: Optional[Subscription],
        boundaries: BillingBoundaries,
    ) -> FeeResult:
        """Compute and persist the subscription fee, or return the existing one."""

        if invoice is None:
            return _not_found("invoice")
        if subscription is None:
            return _not_found("subscription")

        try:
            with self.repository.transaction():
                self.repository.lock_subscription_fee(invoice.invoice_id, subscription.subscription_id)
                existing = self.repository.find_subscription_fee(
                    invoice.invoice_id, subscription.subscription_id
                )
                if existing is not None:
                    self.event_logger.log(
                        FeeAuditEvent(
                            event_type=FeeAuditEventType.FEE_ALREADY_BILLED,
                            invoice_id=invoice.invoice_id,
                            subscription_id=subscription.subscription_id,
                            metadata={"fee_id": existing.fee_id},
                        )
                    )
                    return FeeResult(fee=existing, already_billed=True)

                fee = self._build_fee(invoice, subscription, boundaries)
                if self.sequence_generator is None:
                    persisted = self.repository.create_fee(fee)
                else:
                    scope = SequenceScope(entity=FEE_SEQUENCE_ENTITY, owner_id=invoice.invoice_id)
                    with self.sequence_generator.reserve(scope):
                        fee = self.sequence_generator.ensure_sequential_id(fee, scope)
                        persisted = self.repository.create_fee(fee)
        except FeeValidationError as exc:
            logger.warning(
                "Subscription fee rejected invoice=%s subscription=%s code=%s",
                invoice.invoice_id,
                subscription.subscription_id,
                exc.code,
            )
            self.event_logger.log(
                FeeAuditEvent(
                    event_type=FeeAuditEventType.FEE_VALIDATION_FAILED,
                    invoice_id=invoice.invoice_id,
                    subscription_id=subscription.subscription_id,
                    metadata={"code": exc.code},
                )
            )
            return FeeResult(
                error=ServiceFailure(code="validation_failure", message=exc.message, details=exc.payload)
            )

        logger.info(
            "Subscription fee created invoice=%s subscription=%s amount=%s %s",
            persisted.invoice_id,
            persisted.subscription_id,
            persisted.amount_cents,
            persisted.amount_currency,
        )
        self.event_logger.log(
            FeeAuditEvent(
                event_type=FeeAuditEventType.FEE_CREATED,
                invoice_id=persisted.invoice_id,
                subscription_id=persisted.subscription_id,
                metadata={"fee_id": persisted.fee_id, "amount_cents": str(persisted.amount_cents)},
            )
        )
        return FeeResult(fee=persisted)

    def create_for_subscription_id(
        self,
        invoice: Optional[Invoice],
        subscription_id: str,
        boundaries: BillingBoundaries,
    ) -> FeeResult:
        subscription = self.repository.get_subscription(subscription_id)
        return self.create(invoice, subscription, boundaries)

    def _build_fee(
        self,
        invoice: Invoice,
        subscription: Subscription,
        boundaries: BillingBoundaries,
    ) -> Fee:
        previous_subscription = None
        if subscription.previous_subscription_id:
            previous_subscription = self.repository.get_subscription(subscription.previous_subscription_id)

        context = build_context(
            subscription,
            boundaries,
            invoice=invoice,
            has_prior_fee=self.repository.has_fee_before(subscription.subscription_id, invoice.created_at),
            invoice_count=self.repository.count_invoices(subscription.subscription_id),
            previous_subscription=previous_subscription,
        )
        amount_cents = round_amount(compute_amount(context), self.rounding)

        return Fee(
            fee_id=f"fee_{uuid4().hex}",
            invoice_id=invoice.invoice_id,
            subscription_id=subscription.subscription_id,
            amount_cents=amount_cents,
            amount_currency=subscription.plan.amount_currency,
            fee_type=FeeType.SUBSCRIPTION,
            units=1,
            properties=boundaries.to_properties(),
            created_at=self._now(),
        )


def _not_found(resource: str) -> FeeResult:
    return FeeResult(
        error=ServiceFailure(
            code="not_found",
            message=f"{resource} not found",
            details={"resource": resource},
        )
    )


__all__ = [
    "FEE_SEQUENCE_ENTITY",
    "FeeEventLogger",
    "FeeRepository",
    "SubscriptionFeeService",
]
