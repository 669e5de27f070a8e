"""Distributed lock for periodic batch jobs.

One row per job name in ``cron_locks``. Acquisition is a single conditional
update (``locked_until < now``) with an insert for the first run; the winner is
whoever's ``owner_id`` is stored afterwards. Release is conditioned on the
owner so an expired holder can never release a lock re-acquired by another
process. Store errors fail closed: the run is skipped.
"""

from __future__ import annotations

import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.clock import Clock, default_clock
from backend.core.db import EPOCH
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_lock_acquired, increment_lock_skipped
from backend.core.schema import CRON_LOCKS

logger = get_logger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    owner_id: str
    locked_until: datetime | None = None


@dataclass
class LockedRun:
    """Outcome of :meth:`CronLock.run_locked`."""

    ran: bool
    owner_id: str
    result: Any = None
    error: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class CronLock:
    def __init__(self, engine: Engine, *, clock: Clock | None = None, owner_id: str | None = None) -> None:
        self.engine = engine
        self.clock = clock or default_clock
        self.owner_id = owner_id or default_owner_id()

    def acquire(self, name: str, duration: timedelta) -> LockResult:
        if not name:
            raise ValueError("lock name must be non-empty")
        if duration.total_seconds() <= 0:
            raise ValueError("lock duration must be positive")

        now = self.clock.now()
        locked_until = now + duration
        try:
            with self.engine.begin() as conn:
                res = conn.execute(
                    update(CRON_LOCKS)
                    .where(CRON_LOCKS.c.name == name)
                    .where(CRON_LOCKS.c.locked_until < now)
                    .values(owner_id=self.owner_id, locked_until=locked_until, updated_at=now)
                )
                if res.rowcount == 0:
                    exists = conn.execute(
                        select(CRON_LOCKS.c.name).where(CRON_LOCKS.c.name == name)
                    ).first()
                    if exists is None:
                        conn.execute(
                            insert(CRON_LOCKS).values(
                                name=name,
                                owner_id=self.owner_id,
                                locked_until=locked_until,
                                created_at=now,
                                updated_at=now,
                            )
                        )
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(CRON_LOCKS.c.owner_id, CRON_LOCKS.c.locked_until).where(
                        CRON_LOCKS.c.name == name
                    )
                ).first()
        except IntegrityError:
            # Another process inserted the first row concurrently
            logger.debug("cron_lock_race_lost", extra={"lock_name": name, "owner_id": self.owner_id})
            increment_lock_skipped(name)
            return LockResult(acquired=False, owner_id=self.owner_id)
        except SQLAlchemyError as e:
            logger.error(
                "cron_lock_acquire_error",
                extra={"lock_name": name, "owner_id": self.owner_id, "error": str(e)},
            )
            increment_lock_skipped(name)
            return LockResult(acquired=False, owner_id=self.owner_id)

        acquired = row is not None and row.owner_id == self.owner_id and row.locked_until == locked_until
        if acquired:
            increment_lock_acquired(name)
            logger.info(
                "cron_lock_acquired",
                extra={"lock_name": name, "owner_id": self.owner_id, "locked_until": locked_until.isoformat()},
            )
            return LockResult(acquired=True, owner_id=self.owner_id, locked_until=locked_until)

        increment_lock_skipped(name)
        logger.debug(
            "cron_lock_held",
            extra={"lock_name": name, "owner_id": self.owner_id, "holder": row.owner_id if row else None},
        )
        return LockResult(acquired=False, owner_id=self.owner_id)

    def release(
        self,
        name: str,
        owner_id: str | None = None,
        *,
        status: str = STATUS_SUCCESS,
        duration_ms: int | None = None,
        stats: dict[str, Any] | None = None,
    ) -> bool:
        """Expire the lock if still held by ``owner_id`` and record run bookkeeping."""
        owner_id = owner_id or self.owner_id
        now = self.clock.now()
        try:
            with self.engine.begin() as conn:
                res = conn.execute(
                    update(CRON_LOCKS)
                    .where(CRON_LOCKS.c.name == name)
                    .where(CRON_LOCKS.c.owner_id == owner_id)
                    .values(
                        locked_until=EPOCH,
                        last_execution_at=now,
                        last_execution_status=status,
                        last_execution_duration_ms=duration_ms,
                        last_stats=stats or {},
                        updated_at=now,
                    )
                )
        except SQLAlchemyError as e:
            # The lease expires on its own
            logger.error("cron_lock_release_error", extra={"lock_name": name, "owner_id": owner_id, "error": str(e)})
            return False

        if res.rowcount == 0:
            logger.warning("cron_lock_release_not_owner", extra={"lock_name": name, "owner_id": owner_id})
            return False
        logger.info("cron_lock_released", extra={"lock_name": name, "owner_id": owner_id, "status": status})
        return True

    def run_locked(self, name: str, duration: timedelta, fn: Callable[[], Any]) -> LockedRun:
        """Run ``fn`` only when the lock is acquired; always release afterwards.

        A dict returned by ``fn`` is stored as the run stats.
        """
        lock = self.acquire(name, duration)
        if not lock.acquired:
            logger.info("cron_lock_skipped", extra={"lock_name": name, "owner_id": lock.owner_id})
            return LockedRun(ran=False, owner_id=lock.owner_id)

        t0 = time.time()
        run = LockedRun(ran=True, owner_id=lock.owner_id)
        status = STATUS_SUCCESS
        try:
            run.result = fn()
            if isinstance(run.result, dict):
                run.stats = dict(run.result)
        except Exception as e:
            status = STATUS_FAILED
            run.error = str(e)
            run.stats = {"error": str(e)}
            logger.exception("cron_job_failed", extra={"lock_name": name, "owner_id": lock.owner_id})
        finally:
            self.release(
                name,
                lock.owner_id,
                status=status,
                duration_ms=int((time.time() - t0) * 1000),
                stats=run.stats,
            )
        return run

    def get_status(self, name: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(CRON_LOCKS).where(CRON_LOCKS.c.name == name)).mappings().first()
        if row is None:
            return None
        now = self.clock.now()
        return {
            "name": row["name"],
            "owner_id": row["owner_id"],
            "locked": row["locked_until"] > now,
            "locked_until": row["locked_until"].isoformat(),
            "last_execution_at": row["last_execution_at"].isoformat() if row["last_execution_at"] else None,
            "last_execution_status": row["last_execution_status"],
            "last_execution_duration_ms": row["last_execution_duration_ms"],
            "last_stats": row["last_stats"],
        }


def list_lock_status(engine: Engine, clock: Clock | None = None) -> list[dict[str, Any]]:
    lock = CronLock(engine, clock=clock, owner_id="status-reader")
    with engine.connect() as conn:
        names = [r.name for r in conn.execute(select(CRON_LOCKS.c.name).order_by(CRON_LOCKS.c.name))]
    return [s for s in (lock.get_status(n) for n in names) if s is not None]


__all__ = ["CronLock", "LockResult", "LockedRun", "list_lock_status", "STATUS_SUCCESS", "STATUS_FAILED"]
