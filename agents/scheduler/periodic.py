from __future__ import annotations

import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from backend.core.clock import Clock, at_local_time, default_clock, to_local
from backend.core.observability import generate_trace_id
from backend.core.observability.logging import get_logger, log_context
from backend.core.observability.metrics import increment_job_failures, record_job_duration

logger = get_logger(__name__)

SKIPPED_OVERLAP = "skipped_overlap"


@dataclass
class PeriodicTask:
    """A job run on a fixed interval (or daily at a business-local hour).

    Ticks of the same task never overlap: a tick that starts while the
    previous one is still running returns ``SKIPPED_OVERLAP``.
    """

    name: str
    interval: timedelta
    fn: Callable[[], Any]
    lock_duration: timedelta | None = None
    at_hour: int | None = None
    _running: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.interval.total_seconds() <= 0:
            raise ValueError(f"{self.name}: interval must be positive")
        if self.lock_duration is not None and self.lock_duration >= self.interval:
            raise ValueError(f"{self.name}: lock duration must be shorter than the interval")
        if self.at_hour is not None and not 0 <= self.at_hour <= 23:
            raise ValueError(f"{self.name}: at_hour must be 0..23")

    def next_run(self, now: datetime) -> datetime:
        if self.at_hour is None:
            return now + self.interval
        today = at_local_time(now, self.at_hour)
        return today if to_local(now) < today else at_local_time(now, self.at_hour, days=1)

    def tick(self) -> Any:
        if not self._running.acquire(blocking=False):
            logger.info("job_tick_overlap", extra={"job_name": self.name})
            return SKIPPED_OVERLAP
        t0 = time.time()
        try:
            with log_context(trace_id=generate_trace_id(), job=self.name):
                try:
                    return self.fn()
                except Exception:
                    increment_job_failures(self.name)
                    logger.exception("job_tick_failed", extra={"job_name": self.name})
                    return None
                finally:
                    record_job_duration(self.name, (time.time() - t0) * 1000.0)
        finally:
            self._running.release()


class Scheduler:
    """Runs each task on its own thread; different jobs never wait on each other."""

    def __init__(self, tasks: Sequence[PeriodicTask], *, clock: Clock | None = None) -> None:
        self.tasks = list(tasks)
        self.clock = clock or default_clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _loop(self, task: PeriodicTask, run_immediately: bool) -> None:
        next_at = self.clock.now() if run_immediately else task.next_run(self.clock.now())
        while not self._stop.is_set():
            wait_s = (next_at - self.clock.now()).total_seconds()
            if wait_s > 0 and self._stop.wait(wait_s):
                break
            task.tick()
            next_at = task.next_run(self.clock.now())

    def start(self) -> None:
        for task in self.tasks:
            t = threading.Thread(
                target=self._loop,
                args=(task, task.at_hour is None),
                name=f"job-{task.name}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info("scheduler_started", extra={"jobs": [t.name for t in self.tasks]})

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        logger.info("scheduler_stopped")

    def run_forever(self) -> int:
        """Run until SIGINT/SIGTERM. Returns process exit code."""

        def _handler(signum, frame):  # noqa: ARG001
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

        self.start()
        while not self._stop.is_set():
            self._stop.wait(1.0)
        self.stop()
        return 0
