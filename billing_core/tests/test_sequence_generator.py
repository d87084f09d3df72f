from __future__ import annotations

import sys
from pathlib import Path
from threading import Barrier, Event, Thread
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing_core.app.sequencing import (
    InMemoryLockManager,
    InMemorySequenceStore,
    LockTimeout,
    PostgresAdvisoryLockManager,
    SequenceError,
    SequenceGenerator,
    SequenceScope,
)
from billing_core.app.sequencing.repository import PostgresSequenceStore


INVOICES = SequenceScope(entity="invoice", owner_id="org_1")
OTHER_INVOICES = SequenceScope(entity="invoice", owner_id="org_2")


class NumberedRecord(BaseModel):
    name: str
    sequential_id: Optional[int] = None


class StaleMaxSequenceStore(InMemorySequenceStore):
    """Reports a maximum lagging behind the values actually taken."""

    def max_sequential_id(self, scope: SequenceScope) -> int:
        return max(super().max_sequential_id(scope) - 2, 0)


@pytest.fixture
def store() -> InMemorySequenceStore:
    return InMemorySequenceStore()


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()


def test_lock_key_combines_entity_and_owner() -> None:
    assert INVOICES.lock_key == "invoice_lock:org_1"


def test_first_value_is_one_and_values_increase(store, locks) -> None:
    generator = SequenceGenerator(store, locks)

    assert [generator.next_value(INVOICES) for _ in range(3)] == [1, 2, 3]


def test_continues_after_existing_maximum(locks) -> None:
    store = InMemorySequenceStore({("invoice", "org_1"): {1, 2, 3, 4}})
    generator = SequenceGenerator(store, locks)

    assert generator.next_value(INVOICES) == 5


def test_probe_skips_values_already_taken(locks) -> None:
    store = StaleMaxSequenceStore({("invoice", "org_1"): {1, 2, 3}})
    generator = SequenceGenerator(store, locks)

    assert generator.next_value(INVOICES) == 4


def test_concurrent_callers_receive_contiguous_values(store, locks) -> None:
    workers = 20
    barrier = Barrier(workers)
    values: List[int] = []

    def assign() -> None:
        barrier.wait()
        values.append(generator.next_value(INVOICES))

    generator = SequenceGenerator(store, locks)
    threads = [Thread(target=assign) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(values) == list(range(1, workers + 1))


def test_scopes_do_not_block_each_other(store, locks) -> None:
    generator = SequenceGenerator(store, locks, timeout_seconds=0.5)
    generator.next_value(INVOICES)
    held = Event()
    release = Event()

    def hold_scope_lock() -> None:
        with locks.acquire(INVOICES.lock_key, timeout_seconds=1):
            held.set()
            release.wait(timeout=5)

    holder = Thread(target=hold_scope_lock)
    holder.start()
    try:
        assert held.wait(timeout=5)
        assert generator.next_value(OTHER_INVOICES) == 1
        assert generator.next_value(OTHER_INVOICES) == 2
    finally:
        release.set()
        holder.join()

    assert generator.next_value(INVOICES) == 2


def test_lock_timeout_raises_sequence_error_without_advancing(store, locks) -> None:
    generator = SequenceGenerator(store, locks, timeout_seconds=0.05)

    with locks.acquire(INVOICES.lock_key, timeout_seconds=1):
        with pytest.raises(SequenceError) as excinfo:
            generator.next_value(INVOICES)

    assert isinstance(excinfo.value.__cause__, LockTimeout)
    assert store.max_sequential_id(INVOICES) == 0
    assert generator.next_value(INVOICES) == 1


def test_ensure_sequential_id_keeps_existing_number(store, locks) -> None:
    generator = SequenceGenerator(store, locks)
    record = NumberedRecord(name="already numbered", sequential_id=7)

    assert generator.ensure_sequential_id(record, INVOICES) is record
    assert store.max_sequential_id(INVOICES) == 0


def test_ensure_sequential_id_assigns_next_value(store, locks) -> None:
    generator = SequenceGenerator(store, locks)

    numbered = generator.ensure_sequential_id(NumberedRecord(name="new"), INVOICES)

    assert numbered.sequential_id == 1
    assert generator.ensure_sequential_id(numbered, INVOICES) is numbered


def test_negative_timeout_is_rejected(store, locks) -> None:
    with pytest.raises(ValueError):
        SequenceGenerator(store, locks, timeout_seconds=-1)


def _mock_connection(cursor: MagicMock) -> MagicMock:
    conn = MagicMock()
    conn.cursor.return_value = cursor
    cursor.__enter__.return_value = cursor
    return conn


def test_advisory_lock_polls_until_acquired() -> None:
    cursor = MagicMock()
    cursor.fetchone.side_effect = [(False,), (False,), (True,)]
    sleeps: List[float] = []
    manager = PostgresAdvisoryLockManager(
        _mock_connection(cursor),
        poll_interval=0.1,
        clock=lambda: 0.0,
        sleep=sleeps.append,
    )

    with manager.acquire("invoice_lock:org_1", timeout_seconds=10):
        pass

    assert sleeps == [0.1, 0.1]
    cursor.execute.assert_called_with("SELECT pg_try_advisory_xact_lock(hashtext(%s))", ("invoice_lock:org_1",))


def test_advisory_lock_times_out() -> None:
    cursor = MagicMock()
    cursor.fetchone.return_value = (False,)
    ticks = iter([0.0, 5.0, 11.0])
    manager = PostgresAdvisoryLockManager(
        _mock_connection(cursor),
        clock=lambda: next(ticks),
        sleep=lambda _: None,
    )

    with pytest.raises(LockTimeout) as excinfo:
        with manager.acquire("invoice_lock:org_1", timeout_seconds=10):
            pass

    assert excinfo.value.key == "invoice_lock:org_1"
    assert cursor.execute.call_count == 2


def test_postgres_store_reads_maximum_and_probes() -> None:
    cursor = MagicMock()
    cursor.fetchone.side_effect = [(3,), (1,), None]
    store = PostgresSequenceStore(_mock_connection(cursor), tables={"invoice": ("billing_invoices", "organization_id")})

    assert store.max_sequential_id(INVOICES) == 3
    assert store.exists(INVOICES, 4) is True
    assert store.exists(INVOICES, 5) is False
    assert cursor.execute.call_args_list[0].args[1] == ("org_1",)
    assert cursor.execute.call_args_list[2].args[1] == ("org_1", 5)


def test_postgres_store_rejects_unregistered_entity() -> None:
    store = PostgresSequenceStore(MagicMock(), tables={})

    with pytest.raises(LookupError):
        store.max_sequential_id(INVOICES)


def test_postgres_store_transaction_rolls_back_to_savepoint_on_error() -> None:
    cursor = MagicMock()
    store = PostgresSequenceStore(_mock_connection(cursor), tables={})

    with pytest.raises(SequenceError):
        with store.transaction():
            raise SequenceError("boom")

    statements = [call.args[0] for call in cursor.execute.call_args_list]
    assert statements == ["SAVEPOINT sequential_id", "ROLLBACK TO SAVEPOINT sequential_id"]


def test_reserve_gives_values_back_when_the_block_fails(store, locks) -> None:
    generator = SequenceGenerator(store, locks)

    with pytest.raises(RuntimeError):
        with generator.reserve(INVOICES):
            assert generator.next_value(INVOICES) == 1
            assert generator.next_value(INVOICES) == 2
            raise RuntimeError("insert failed")

    assert store.max_sequential_id(INVOICES) == 0
    assert generator.next_value(INVOICES) == 1


def test_reserve_keeps_values_when_the_block_succeeds(store, locks) -> None:
    generator = SequenceGenerator(store, locks)

    with generator.reserve(INVOICES):
        numbered = generator.ensure_sequential_id(NumberedRecord(name="new"), INVOICES)

    assert numbered.sequential_id == 1
    assert store.max_sequential_id(INVOICES) == 1


def test_reserve_holds_the_scope_lock_until_the_block_ends(store, locks) -> None:
    generator = SequenceGenerator(store, locks, timeout_seconds=0.05)
    outcome: List[str] = []

    def compete() -> None:
        try:
            generator.next_value(INVOICES)
        except SequenceError:
            outcome.append("timed out")

    with generator.reserve(INVOICES):
        generator.next_value(INVOICES)
        competitor = Thread(target=compete)
        competitor.start()
        competitor.join()

    assert outcome == ["timed out"]
    assert generator.next_value(INVOICES) == 2


def test_lock_manager_forgets_released_keys(locks) -> None:
    with locks.acquire("invoice_lock:org_1", timeout_seconds=1):
        assert locks.tracked_keys() == 1
        with pytest.raises(LockTimeout):
            with locks.acquire("invoice_lock:org_1", timeout_seconds=0):
                pass
        assert locks.tracked_keys() == 1

    assert locks.tracked_keys() == 0
