"""Lease-based claiming and outcome recording for notification attempts.

A claim is a conditional update of one attempt row; only the process whose
update matched holds the lease. Outcome writes are conditioned on the lease
token so a worker whose lease already expired cannot overwrite a newer claim.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.observability.logging import get_logger
from backend.core.schema import NOTIFICATION_ATTEMPTS, NOTIFICATIONS

from .store import AttemptStatus

logger = get_logger(__name__)

_A = NOTIFICATION_ATTEMPTS


@dataclass(frozen=True)
class ClaimedAttempt:
    id: str
    notification_id: str
    user_id: str
    channel: str
    attempt_no: int
    max_attempts: int
    lease_token: str
    leased_until: datetime
    next_attempt_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ClaimedAttempt":
        return cls(
            id=row["id"],
            notification_id=row["notification_id"],
            user_id=row["user_id"],
            channel=row["channel"],
            attempt_no=row["attempt_no"],
            max_attempts=row["max_attempts"],
            lease_token=row["lease_token"],
            leased_until=row["leased_until"],
            next_attempt_at=row["next_attempt_at"],
        )

    @property
    def is_last(self) -> bool:
        return self.attempt_no >= self.max_attempts


def claimable(now: datetime):
    """Predicate for attempts a worker may lease at ``now``.

    Due QUEUED attempts without a live lease, plus IN_PROGRESS attempts whose
    lease expired (the previous worker crashed or stalled).
    """
    queued = sa.and_(
        _A.c.status == AttemptStatus.QUEUED.value,
        _A.c.next_attempt_at <= now,
        sa.or_(_A.c.leased_until.is_(None), _A.c.leased_until < now),
    )
    abandoned = sa.and_(
        _A.c.status == AttemptStatus.IN_PROGRESS.value,
        _A.c.leased_until < now,
    )
    return sa.and_(sa.or_(queued, abandoned), _A.c.attempt_no < _A.c.max_attempts)


def select_candidates(engine: Engine, now: datetime, limit: int) -> list[str]:
    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(_A.c.id).where(claimable(now)).order_by(_A.c.next_attempt_at, _A.c.id).limit(limit)
        ).fetchall()
    return [r.id for r in rows]


def claim_attempt(engine: Engine, attempt_id: str, now: datetime, lease: timedelta) -> ClaimedAttempt | None:
    """Lease one attempt; ``None`` when another worker got it first or it is not due."""
    token = str(uuid4())
    with engine.begin() as conn:
        res = conn.execute(
            sa.update(_A)
            .where(_A.c.id == attempt_id)
            .where(claimable(now))
            .values(
                status=AttemptStatus.IN_PROGRESS.value,
                leased_until=now + lease,
                lease_token=token,
                attempt_no=_A.c.attempt_no + 1,
                updated_at=now,
            )
        )
        if res.rowcount != 1:
            return None
        row = conn.execute(
            sa.select(_A).where(_A.c.id == attempt_id).where(_A.c.lease_token == token)
        ).mappings().first()
    return ClaimedAttempt.from_row(row) if row else None


def claim_next(engine: Engine, now: datetime, lease: timedelta, *, scan: int = 10) -> ClaimedAttempt | None:
    """Claim the oldest due attempt, trying up to ``scan`` candidates."""
    for attempt_id in select_candidates(engine, now, scan):
        claimed = claim_attempt(engine, attempt_id, now, lease)
        if claimed is not None:
            return claimed
    return None


def _finish(engine: Engine, claim: ClaimedAttempt, values: dict[str, Any]) -> bool:
    with engine.begin() as conn:
        res = conn.execute(
            sa.update(_A)
            .where(_A.c.id == claim.id)
            .where(_A.c.lease_token == claim.lease_token)
            .where(_A.c.status == AttemptStatus.IN_PROGRESS.value)
            .values(**values)
        )
    if res.rowcount != 1:
        logger.warning(
            "attempt_lease_lost",
            extra={"attempt_id": claim.id, "channel": claim.channel, "attempt_no": claim.attempt_no},
        )
        return False
    return True


def mark_sent(engine: Engine, claim: ClaimedAttempt, now: datetime, provider_message_id: str | None) -> bool:
    return _finish(
        engine,
        claim,
        {
            "status": AttemptStatus.SENT.value,
            "provider_message_id": provider_message_id,
            "sent_at": now,
            "leased_until": None,
            "lease_token": None,
            "last_error": None,
            "updated_at": now,
        },
    )


def schedule_retry(
    engine: Engine, claim: ClaimedAttempt, now: datetime, next_attempt_at: datetime, error: dict[str, Any]
) -> bool:
    return _finish(
        engine,
        claim,
        {
            "status": AttemptStatus.QUEUED.value,
            "next_attempt_at": next_attempt_at,
            "leased_until": None,
            "lease_token": None,
            "last_error": error,
            "updated_at": now,
        },
    )


def mark_dead(engine: Engine, claim: ClaimedAttempt, now: datetime, error: dict[str, Any]) -> bool:
    return _finish(
        engine,
        claim,
        {
            "status": AttemptStatus.DEAD.value,
            "leased_until": None,
            "lease_token": None,
            "last_error": error,
            "updated_at": now,
        },
    )


def sweep_abandoned(engine: Engine, now: datetime, limit: int = 100) -> int:
    """Move expired IN_PROGRESS attempts that used their last try to DEAD."""
    with engine.connect() as conn:
        ids = [
            r.id
            for r in conn.execute(
                sa.select(_A.c.id)
                .where(_A.c.status == AttemptStatus.IN_PROGRESS.value)
                .where(_A.c.leased_until < now)
                .where(_A.c.attempt_no >= _A.c.max_attempts)
                .limit(limit)
            )
        ]
    swept = 0
    for attempt_id in ids:
        with engine.begin() as conn:
            res = conn.execute(
                sa.update(_A)
                .where(_A.c.id == attempt_id)
                .where(_A.c.status == AttemptStatus.IN_PROGRESS.value)
                .where(_A.c.leased_until < now)
                .values(
                    status=AttemptStatus.DEAD.value,
                    leased_until=None,
                    lease_token=None,
                    last_error={"code": "LEASE_EXPIRED", "message": "worker lease expired", "retryable": False},
                    updated_at=now,
                )
            )
        swept += res.rowcount
    if swept:
        logger.warning("attempts_abandoned_dead", extra={"count": swept})
    return swept


def load_notification(engine: Engine, notification_id: str) -> Mapping[str, Any] | None:
    with engine.connect() as conn:
        return conn.execute(
            sa.select(NOTIFICATIONS).where(NOTIFICATIONS.c.id == notification_id)
        ).mappings().first()


def get_attempt(engine: Engine, attempt_id: str) -> Mapping[str, Any] | None:
    with engine.connect() as conn:
        return conn.execute(sa.select(_A).where(_A.c.id == attempt_id)).mappings().first()


__all__ = [
    "ClaimedAttempt",
    "claim_attempt",
    "claim_next",
    "claimable",
    "get_attempt",
    "load_notification",
    "mark_dead",
    "mark_sent",
    "schedule_retry",
    "select_candidates",
    "sweep_abandoned",
]
