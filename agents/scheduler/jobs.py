from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.engine import Engine

from agents.notify_delivery.runner import DeliveryWorker
from agents.notify_generators import runner as generators
from agents.recovery.runner import RecoveryJob
from backend.core.clock import Clock, default_clock
from backend.core.config import settings

from .periodic import PeriodicTask

JOB_GENERATE = "notification_generation"
JOB_DAILY_SUMMARY = "daily_summary"
JOB_DELIVER = "notification_delivery"
JOB_RECOVERY = "recovery_task_processing"


def _recovery(engine: Engine, clock: Clock) -> dict[str, Any]:
    run = RecoveryJob(engine, clock=clock).run()
    return {"ran": run.ran, "owner_id": run.owner_id, "error": run.error, **run.stats}


def build_tasks(engine: Engine, clock: Clock | None = None) -> dict[str, PeriodicTask]:
    clock = clock or default_clock
    worker = DeliveryWorker(engine, clock=clock)
    tasks = [
        PeriodicTask(
            JOB_GENERATE,
            timedelta(seconds=settings.GENERATOR_INTERVAL_S),
            lambda: generators.run_once(engine, clock),
        ),
        PeriodicTask(
            JOB_DAILY_SUMMARY,
            timedelta(days=1),
            lambda: generators.run_daily_summary(engine, clock),
            at_hour=settings.DAILY_SUMMARY_HOUR,
        ),
        PeriodicTask(
            JOB_DELIVER,
            timedelta(seconds=settings.DELIVERY_INTERVAL_S),
            worker.run_once,
        ),
        PeriodicTask(
            JOB_RECOVERY,
            timedelta(seconds=settings.RECOVERY_INTERVAL_S),
            lambda: _recovery(engine, clock),
            lock_duration=timedelta(seconds=settings.RECOVERY_LOCK_S),
        ),
    ]
    return {t.name: t for t in tasks}
