from __future__ import annotations

import json
import threading
from datetime import timedelta

import pytest

from agents.scheduler import main as cli
from agents.scheduler.jobs import JOB_DELIVER, JOB_RECOVERY, build_tasks
from agents.scheduler.periodic import SKIPPED_OVERLAP, PeriodicTask
from backend.core.cron_lock import CronLock
from backend.core.observability.metrics import get_counter


def test_overlapping_tick_is_skipped():
    started = threading.Event()
    release = threading.Event()

    def slow():
        started.set()
        release.wait(10)
        return "done"

    task = PeriodicTask("slow_job", timedelta(seconds=30), slow)
    results = []
    t = threading.Thread(target=lambda: results.append(task.tick()))
    t.start()
    assert started.wait(10)

    assert task.tick() == SKIPPED_OVERLAP

    release.set()
    t.join(10)
    assert results == ["done"]
    assert task.tick() == "done"


def test_lock_must_be_shorter_than_interval():
    with pytest.raises(ValueError):
        PeriodicTask("recovery", timedelta(minutes=10), lambda: None, lock_duration=timedelta(minutes=10))
    with pytest.raises(ValueError):
        PeriodicTask("bad", timedelta(0), lambda: None)
    with pytest.raises(ValueError):
        PeriodicTask("bad", timedelta(days=1), lambda: None, at_hour=24)


def test_next_run_for_daily_task(clock):
    task = PeriodicTask("daily_summary", timedelta(days=1), lambda: None, at_hour=9)
    # T0 is 10:00 business time, so today's slot has passed
    assert task.next_run(clock.now()) == clock.now() + timedelta(hours=23)

    early = clock.now() - timedelta(hours=2)
    assert task.next_run(early) == clock.now() - timedelta(hours=1)


def test_next_run_for_interval_task(clock):
    task = PeriodicTask("deliver", timedelta(seconds=30), lambda: None)
    assert task.next_run(clock.now()) == clock.now() + timedelta(seconds=30)


def test_failing_tick_is_counted_and_contained():
    def boom():
        raise RuntimeError("boom")

    task = PeriodicTask("flaky_job", timedelta(seconds=30), boom)

    assert task.tick() is None
    assert task.tick() is None
    assert get_counter("job_failures_total", {"job": "flaky_job"}) == 2


def test_build_tasks(engine, clock):
    tasks = build_tasks(engine, clock)

    assert set(tasks) == {"notification_generation", "daily_summary", "notification_delivery", JOB_RECOVERY}
    assert tasks["daily_summary"].at_hour == 9
    assert tasks[JOB_RECOVERY].lock_duration < tasks[JOB_RECOVERY].interval
    assert tasks[JOB_DELIVER].tick()["sent"] == 0


def test_recovery_tick_reports_lock_skip(engine, clock):
    CronLock(engine, clock=clock, owner_id="other-host").acquire(JOB_RECOVERY, timedelta(minutes=9))

    result = build_tasks(engine, clock)[JOB_RECOVERY].tick()

    assert result["ran"] is False


def test_status_command_prints_lock_rows(engine, monkeypatch, capsys):
    CronLock(engine, owner_id="host-a").run_locked(JOB_RECOVERY, timedelta(minutes=9), lambda: {"dispatched": 1})
    monkeypatch.setattr(cli, "get_engine", lambda: engine)
    monkeypatch.setattr(cli, "init_observability", lambda **_: None)

    assert cli.main(["status"]) == 0

    rows = json.loads(capsys.readouterr().out)
    assert [r["name"] for r in rows] == [JOB_RECOVERY]
    assert rows[0]["last_stats"] == {"dispatched": 1}


def test_run_once_command(engine, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_engine", lambda: engine)
    monkeypatch.setattr(cli, "init_observability", lambda **_: None)

    assert cli.main(["run-once", "notification_delivery"]) == 0

    assert json.loads(capsys.readouterr().out)["sent"] == 0


def test_unknown_job_is_rejected():
    with pytest.raises(SystemExit):
        cli.parse_args(["run-once", "nope"])
