"""Application wiring for subscription fees and sequential numbering."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Mapping, Optional, Tuple

import psycopg2
from dotenv import load_dotenv
from psycopg2.extensions import connection as PgConnection

from ... import app_context
from ...config import BillingConfig, load_billing_config
from ..fees import (
    BillingBoundaries,
    FeeAuditEvent,
    FeeEventLogger,
    FeeResult,
    Invoice,
    Subscription,
    SubscriptionFeeService,
)
from ..fees.repository import PostgresFeeRepository
from ..sequencing import PostgresAdvisoryLockManager, SequenceGenerator, SequenceScope
from ..sequencing.repository import PostgresSequenceStore


logger = logging.getLogger("billing")

SEQUENCED_TABLES: Mapping[str, Tuple[str, str]] = {
    "fee": ("billing_fees", "invoice_id"),
    "invoice": ("billing_invoices", "organization_id"),
}


class LoggingFeeEventLogger(FeeEventLogger):
    """Event logger forwarding fee audit events to logging."""

    def log(self, event: FeeAuditEvent) -> None:
        logger.info(
            "Fee event %s invoice=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.invoice_id,
            event.subscription_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    load_dotenv()
    return load_billing_config()


def connect(config: Optional[BillingConfig] = None) -> PgConnection:
    settings = config or get_billing_config()
    return psycopg2.connect(**settings.connection_kwargs())


def configure_connections(config: Optional[BillingConfig] = None) -> None:
    """Register the psycopg2 connection factory with the application context."""

    settings = config or get_billing_config()
    app_context.configure(get_conn=lambda: connect(settings))


def build_sequence_generator(conn: PgConnection, config: Optional[BillingConfig] = None) -> SequenceGenerator:
    """Sequence generator bound to the caller's transaction on ``conn``."""

    settings = config or get_billing_config()
    return SequenceGenerator(
        PostgresSequenceStore(conn, tables=SEQUENCED_TABLES),
        PostgresAdvisoryLockManager(conn),
        timeout_seconds=settings.sequence_lock_timeout_seconds,
    )


def build_fee_service(conn: PgConnection, config: Optional[BillingConfig] = None) -> SubscriptionFeeService:
    """Fee service running inside a caller-owned transaction.

    Fees are numbered when ``FEE_NUMBERING_ENABLED`` is set, using the same
    connection so the sequence lock lasts until the caller commits.
    """

    settings = config or get_billing_config()
    generator = build_sequence_generator(conn, settings) if settings.fee_numbering_enabled else None
    return SubscriptionFeeService(
        repository=PostgresFeeRepository(conn=conn),
        event_logger=LoggingFeeEventLogger(),
        sequence_generator=generator,
        rounding=settings.fee_rounding,
    )


@lru_cache(maxsize=1)
def get_fee_service() -> SubscriptionFeeService:
    """Fee service managing its own connections and transactions."""

    settings = get_billing_config()
    configure_connections(settings)
    return SubscriptionFeeService(
        repository=PostgresFeeRepository(),
        event_logger=LoggingFeeEventLogger(),
        rounding=settings.fee_rounding,
    )


def compute_subscription_fee(
    invoice: Optional[Invoice],
    subscription: Optional[Subscription],
    boundaries: BillingBoundaries,
) -> FeeResult:
    return get_fee_service().create(invoice, subscription, boundaries)


def next_sequential_id(conn: PgConnection, scope: SequenceScope) -> int:
    """Next id for ``scope``; the caller commits the record that carries it."""

    return build_sequence_generator(conn).next_value(scope)


__all__ = [
    "LoggingFeeEventLogger",
    "build_fee_service",
    "build_sequence_generator",
    "compute_subscription_fee",
    "configure_connections",
    "get_fee_service",
    "next_sequential_id",
]
