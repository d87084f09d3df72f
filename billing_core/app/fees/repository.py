"""Persistence layer for subscription fees."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import FeeValidationError
from .models import (
    BillingTime,
    Fee,
    FeeType,
    IntervalUnit,
    Plan,
    Subscription,
    SubscriptionStatus,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def savepoint(connection: PgConnection, name: str) -> Iterator[None]:
    """Scope work inside a caller-owned transaction so failures undo only this block."""

    with connection.cursor() as cursor:
        cursor.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception:
        with connection.cursor() as cursor:
            cursor.execute(f"ROLLBACK TO SAVEPOINT {name}")
        raise
    with connection.cursor() as cursor:
        cursor.execute(f"RELEASE SAVEPOINT {name}")


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        code=row["plan_code"],
        amount_cents=int(row["amount_cents"]),
        amount_currency=row["amount_currency"],
        interval_unit=IntervalUnit(row["interval_unit"]),
        interval_count=int(row["interval_count"]),
        pay_in_advance=bool(row["pay_in_advance"]),
        trial_period_days=row.get("trial_period_days"),
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        customer_id=row["customer_id"],
        plan=_row_to_plan(row),
        status=SubscriptionStatus(row["status"]),
        billing_time=BillingTime(row["billing_time"]),
        started_at=row.get("started_at"),
        terminated_at=row.get("terminated_at"),
        previous_subscription_id=row.get("previous_subscription_id"),
        next_subscription_id=row.get("next_subscription_id"),
        upgraded=bool(row.get("upgraded")),
        created_at=row["created_at"],
    )


def _row_to_fee(row: dict) -> Fee:
    return Fee(
        fee_id=row["fee_id"],
        invoice_id=row["invoice_id"],
        subscription_id=row["subscription_id"],
        amount_cents=int(row["amount_cents"]),
        amount_currency=row["amount_currency"],
        fee_type=FeeType(row["fee_type"]),
        units=int(row["units"]),
        properties=row.get("properties") or {},
        sequential_id=row.get("sequential_id"),
        created_at=row["created_at"],
    )


class PostgresFeeRepository:
    """Concrete repository persisting subscription fees in PostgreSQL.

    Calls made inside :meth:`transaction` on the same thread share one
    connection. When constructed with a caller-owned connection the
    transaction becomes a savepoint so a failed insert leaves the caller's
    transaction usable.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "connection", None) is not None:
            yield
            return

        with managed_connection(self._conn) as (connection, managed):
            self._local.connection = connection
            try:
                if managed:
                    yield
                else:
                    with savepoint(connection, "subscription_fee"):
                        yield
            finally:
                self._local.connection = None

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        active = getattr(self._local, "connection", None)
        if active is not None:
            cursor = active.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()
            return

        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def lock_subscription_fee(self, invoice_id: str, subscription_id: str) -> None:
        """Serialize writers targeting the same (invoice, subscription) pair."""

        with self._cursor() as cursor:
            cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"subscription_fee:{invoice_id}:{subscription_id}",),
            )

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT sub.*,
                       plan.code AS plan_code,
                       plan.amount_cents,
                       plan.amount_currency,
                       plan.interval_unit,
                       plan.interval_count,
                       plan.pay_in_advance,
                       plan.trial_period_days
                FROM billing_subscriptions AS sub
                JOIN billing_plans AS plan ON plan.plan_id = sub.plan_id
                WHERE sub.subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_subscription_fee(self, invoice_id: str, subscription_id: str) -> Optional[Fee]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_fees
                WHERE invoice_id = %s AND subscription_id = %s AND fee_type = %s
                LIMIT 1
                """,
                (invoice_id, subscription_id, FeeType.SUBSCRIPTION.value),
            )
            row = cursor.fetchone()
            return _row_to_fee(row) if row else None

    def has_fee_before(self, subscription_id: str, before: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM billing_fees
                WHERE subscription_id = %s AND fee_type = %s AND created_at < %s
                LIMIT 1
                """,
                (subscription_id, FeeType.SUBSCRIPTION.value, before),
            )
            return cursor.fetchone() is not None

    def count_invoices(self, subscription_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(DISTINCT invoice_id) AS invoice_count
                FROM billing_invoice_subscriptions
                WHERE subscription_id = %s
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return int(row["invoice_count"]) if row else 0

    def create_fee(self, fee: Fee) -> Fee:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO billing_fees (
                        fee_id,
                        invoice_id,
                        subscription_id,
                        amount_cents,
                        amount_currency,
                        fee_type,
                        units,
                        properties,
                        sequential_id,
                        created_at
                    )
                    VALUES (%(fee_id)s, %(invoice_id)s, %(subscription_id)s, %(amount_cents)s,
                            %(amount_currency)s, %(fee_type)s, %(units)s, %(properties)s,
                            %(sequential_id)s, %(created_at)s)
                    RETURNING *
                    """,
                    {
                        "fee_id": fee.fee_id,
                        "invoice_id": fee.invoice_id,
                        "subscription_id": fee.subscription_id,
                        "amount_cents": fee.amount_cents,
                        "amount_currency": fee.amount_currency,
                        "fee_type": fee.fee_type.value,
                        "units": fee.units,
                        "properties": psycopg2.extras.Json(fee.properties),
                        "sequential_id": fee.sequential_id,
                        "created_at": fee.created_at,
                    },
                )
                row = cursor.fetchone()
        except psycopg2.IntegrityError as exc:
            raise FeeValidationError(
                code="value_already_exist" if isinstance(exc, psycopg2.errors.UniqueViolation) else "invalid_record",
                message="Subscription fee violates a data constraint",
                detail={"invoice_id": fee.invoice_id, "subscription_id": fee.subscription_id},
            ) from exc
        if not row:
            raise RuntimeError("Failed to persist fee")
        return _row_to_fee(row)


__all__ = ["PostgresFeeRepository", "managed_connection", "savepoint"]
