from __future__ import annotations

import threading
from datetime import timedelta

import pytest
import sqlalchemy as sa

from backend.core.cron_lock import STATUS_FAILED, STATUS_SUCCESS, CronLock, list_lock_status
from backend.core.db import create_db_engine
from backend.core.observability.metrics import get_counter
from backend.core.schema import CRON_LOCKS

NINE_MIN = timedelta(minutes=9)


def test_first_acquire_inserts_row(engine, clock):
    result = CronLock(engine, clock=clock, owner_id="a").acquire("recovery_lock", NINE_MIN)

    assert result.acquired is True
    assert result.locked_until == clock.now() + NINE_MIN
    with engine.connect() as conn:
        row = conn.execute(sa.select(CRON_LOCKS)).mappings().one()
    assert row["owner_id"] == "a"


def test_held_lock_is_not_acquired_by_another_owner(engine, clock):
    assert CronLock(engine, clock=clock, owner_id="a").acquire("recovery_lock", NINE_MIN).acquired
    assert not CronLock(engine, clock=clock, owner_id="b").acquire("recovery_lock", NINE_MIN).acquired
    assert get_counter("cron_lock_skipped_total", {"lock": "recovery_lock"}) == 1


def test_concurrent_acquire_has_one_winner(engine, clock):
    barrier = threading.Barrier(2)
    results = {}

    def worker(owner: str) -> None:
        lock = CronLock(engine, clock=clock, owner_id=owner)
        barrier.wait()
        results[owner] = lock.acquire("recovery_lock", NINE_MIN).acquired

    threads = [threading.Thread(target=worker, args=(o,)) for o in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(results.values()) == [False, True]


def test_expired_lock_can_be_taken_over(engine, clock):
    assert CronLock(engine, clock=clock, owner_id="a").acquire("recovery_lock", NINE_MIN).acquired
    clock.advance(minutes=9, seconds=1)

    assert CronLock(engine, clock=clock, owner_id="b").acquire("recovery_lock", NINE_MIN).acquired


def test_release_only_by_owner(engine, clock):
    a = CronLock(engine, clock=clock, owner_id="a")
    b = CronLock(engine, clock=clock, owner_id="b")
    assert a.acquire("recovery_lock", NINE_MIN).acquired

    assert b.release("recovery_lock") is False
    assert not b.acquire("recovery_lock", NINE_MIN).acquired

    assert a.release("recovery_lock", stats={"dispatched": 3}) is True
    assert b.acquire("recovery_lock", NINE_MIN).acquired


def test_expired_holder_cannot_release_new_owner(engine, clock):
    a = CronLock(engine, clock=clock, owner_id="a")
    b = CronLock(engine, clock=clock, owner_id="b")
    a.acquire("recovery_lock", NINE_MIN)
    clock.advance(minutes=10)
    b.acquire("recovery_lock", NINE_MIN)

    assert a.release("recovery_lock") is False
    assert b.get_status("recovery_lock")["locked"] is True


def test_broken_store_fails_closed(tmp_path, clock):
    broken = create_db_engine(f"sqlite:///{tmp_path / 'no_tables.db'}")
    result = CronLock(broken, clock=clock, owner_id="a").acquire("recovery_lock", NINE_MIN)
    assert result.acquired is False


def test_invalid_arguments(engine, clock):
    lock = CronLock(engine, clock=clock)
    with pytest.raises(ValueError):
        lock.acquire("", NINE_MIN)
    with pytest.raises(ValueError):
        lock.acquire("recovery_lock", timedelta(0))


def test_run_locked_records_bookkeeping(engine, clock):
    lock = CronLock(engine, clock=clock, owner_id="a")
    run = lock.run_locked("recovery_lock", NINE_MIN, lambda: {"dispatched": 2})

    assert run.ran is True
    assert run.stats == {"dispatched": 2}
    status = lock.get_status("recovery_lock")
    assert status["locked"] is False
    assert status["last_execution_status"] == STATUS_SUCCESS
    assert status["last_stats"] == {"dispatched": 2}


def test_run_locked_releases_after_failure(engine, clock):
    lock = CronLock(engine, clock=clock, owner_id="a")

    def boom():
        raise RuntimeError("boom")

    run = lock.run_locked("recovery_lock", NINE_MIN, boom)

    assert run.ran is True
    assert run.error == "boom"
    assert lock.get_status("recovery_lock")["last_execution_status"] == STATUS_FAILED
    assert CronLock(engine, clock=clock, owner_id="b").acquire("recovery_lock", NINE_MIN).acquired


def test_run_locked_skips_when_held(engine, clock):
    CronLock(engine, clock=clock, owner_id="a").acquire("recovery_lock", NINE_MIN)
    calls = []

    run = CronLock(engine, clock=clock, owner_id="b").run_locked("recovery_lock", NINE_MIN, lambda: calls.append(1))

    assert run.ran is False
    assert calls == []


def test_list_lock_status(engine, clock):
    CronLock(engine, clock=clock, owner_id="a").run_locked("b_job", NINE_MIN, lambda: None)
    CronLock(engine, clock=clock, owner_id="a").acquire("a_job", NINE_MIN)

    names = [s["name"] for s in list_lock_status(engine, clock)]
    assert names == ["a_job", "b_job"]
