"""Notification store: idempotent creation of notifications and their attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from backend.core.clock import ensure_aware
from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import (
    increment_notifications_created,
    increment_notifications_existing,
)
from backend.core.schema import NOTIFICATION_ATTEMPTS, NOTIFICATIONS

logger = get_logger(__name__)


class Channel(str, Enum):
    IN_APP = "IN_APP"
    PUSH = "PUSH"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"


class AttemptStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SENT = "SENT"
    FAILED = "FAILED"
    DEAD = "DEAD"


TERMINAL_STATUSES = frozenset({AttemptStatus.SENT.value, AttemptStatus.DEAD.value})


class NotificationKind(str, Enum):
    FOLLOWUP_DUE = "FOLLOWUP_DUE"
    PROMISE_DUE_TODAY = "PROMISE_DUE_TODAY"
    PROMISE_BROKEN = "PROMISE_BROKEN"
    DUE_TODAY = "DUE_TODAY"
    OVERDUE_ALERT = "OVERDUE_ALERT"
    DAILY_SUMMARY = "DAILY_SUMMARY"
    RECOVERY_REMINDER = "RECOVERY_REMINDER"


@dataclass
class NotificationDoc:
    """Fields of a notification to be created; immutable once stored."""

    user_id: str
    kind: NotificationKind
    title: str
    body: str
    channels: Sequence[Channel] = (Channel.IN_APP,)
    business_id: str | None = None
    customer_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    id: str
    business_id: str
    user_id: str
    customer_id: str | None
    kind: str
    idempotency_key: str
    channels: list[str]
    title: str
    body: str
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        return cls(
            id=row["id"],
            business_id=row["business_id"],
            user_id=row["user_id"],
            customer_id=row["customer_id"],
            kind=row["kind"],
            idempotency_key=row["idempotency_key"],
            channels=list(row["channels"] or []),
            title=row["title"],
            body=row["body"],
            metadata=dict(row["metadata"] or {}),
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class EnsureResult:
    """Tagged outcome of :func:`ensure_notification_once`."""

    notification: Notification
    created: bool


def _normalize_channels(channels: Sequence[Channel | str]) -> list[str]:
    ordered: list[str] = []
    for ch in channels:
        value = Channel(ch).value
        if value not in ordered:
            ordered.append(value)
    if not ordered:
        raise ValueError("at least one channel is required")
    return ordered


def find_notification(conn: Connection, user_id: str, idempotency_key: str) -> Notification | None:
    row = (
        conn.execute(
            sa.select(NOTIFICATIONS)
            .where(NOTIFICATIONS.c.user_id == user_id)
            .where(NOTIFICATIONS.c.idempotency_key == idempotency_key)
        )
        .mappings()
        .first()
    )
    return Notification.from_row(row) if row else None


def _attempt_values(
    notification_id: str, user_id: str, channel: str, now: datetime, max_attempts: int
) -> dict[str, Any]:
    return {
        "id": str(uuid4()),
        "notification_id": notification_id,
        "user_id": user_id,
        "channel": channel,
        "status": AttemptStatus.QUEUED.value,
        "attempt_no": 0,
        "max_attempts": max_attempts,
        "next_attempt_at": now,
        "created_at": now,
        "updated_at": now,
    }


def ensure_notification_once(
    engine: Engine,
    idempotency_key: str,
    doc: NotificationDoc,
    *,
    now: datetime,
    max_attempts: int | None = None,
) -> EnsureResult:
    """Create the notification for ``idempotency_key`` unless it already exists.

    The notification and one QUEUED attempt per channel are written in a
    single transaction. Losing the insert race to another process is an
    expected outcome: the winner's row is returned with ``created=False``.
    """
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise ValueError("idempotency_key must be a non-empty string")
    if not doc.user_id:
        raise ValueError("user_id is required")
    channels = _normalize_channels(doc.channels)
    kind = NotificationKind(doc.kind).value
    attempts_max = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
    if attempts_max < 1:
        raise ValueError("max_attempts must be >= 1")
    now = ensure_aware(now)

    with engine.connect() as conn:
        existing = find_notification(conn, doc.user_id, idempotency_key)
    if existing is not None:
        increment_notifications_existing(kind)
        logger.debug(
            "notification_exists",
            extra={"notification_id": existing.id, "kind": kind, "idempotency_key": idempotency_key},
        )
        return EnsureResult(existing, created=False)

    notification_id = str(uuid4())
    values = {
        "id": notification_id,
        "business_id": doc.business_id or doc.user_id,
        "user_id": doc.user_id,
        "customer_id": doc.customer_id,
        "kind": kind,
        "idempotency_key": idempotency_key,
        "channels": channels,
        "title": doc.title,
        "body": doc.body,
        "metadata": dict(doc.metadata),
        "created_at": now,
    }
    try:
        with engine.begin() as conn:
            conn.execute(sa.insert(NOTIFICATIONS).values(**values))
            conn.execute(
                sa.insert(NOTIFICATION_ATTEMPTS),
                [_attempt_values(notification_id, doc.user_id, ch, now, attempts_max) for ch in channels],
            )
    except IntegrityError:
        with engine.connect() as conn:
            existing = find_notification(conn, doc.user_id, idempotency_key)
        if existing is None:
            raise
        increment_notifications_existing(kind)
        logger.debug(
            "notification_insert_race",
            extra={"notification_id": existing.id, "kind": kind, "idempotency_key": idempotency_key},
        )
        return EnsureResult(existing, created=False)

    increment_notifications_created(kind)
    logger.info(
        "notification_created",
        extra={
            "notification_id": notification_id,
            "user_id": doc.user_id,
            "kind": kind,
            "channels": channels,
            "idempotency_key": idempotency_key,
        },
    )
    return EnsureResult(Notification.from_row(values), created=True)


def ensure_attempts(
    engine: Engine, notification: Notification, *, now: datetime, max_attempts: int | None = None
) -> int:
    """Create QUEUED attempts for channels of ``notification`` that have none.

    Returns the number of attempts created.
    """
    attempts_max = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
    with engine.connect() as conn:
        present = {
            r.channel
            for r in conn.execute(
                sa.select(NOTIFICATION_ATTEMPTS.c.channel).where(
                    NOTIFICATION_ATTEMPTS.c.notification_id == notification.id
                )
            )
        }
    created = 0
    for channel in notification.channels:
        if channel in present:
            continue
        try:
            with engine.begin() as conn:
                conn.execute(
                    sa.insert(NOTIFICATION_ATTEMPTS).values(
                        **_attempt_values(notification.id, notification.user_id, channel, now, attempts_max)
                    )
                )
            created += 1
        except IntegrityError:
            logger.debug(
                "attempt_insert_race",
                extra={"notification_id": notification.id, "channel": channel},
            )
    return created


def backfill_missing_attempts(engine: Engine, *, now: datetime, limit: int = 100) -> int:
    """Create attempts for notifications that have no attempt at all."""
    attempts = NOTIFICATION_ATTEMPTS.alias("a")
    with engine.connect() as conn:
        rows = (
            conn.execute(
                sa.select(NOTIFICATIONS)
                .where(~sa.exists().where(attempts.c.notification_id == NOTIFICATIONS.c.id))
                .order_by(NOTIFICATIONS.c.created_at)
                .limit(limit)
            )
            .mappings()
            .all()
        )
    total = 0
    for row in rows:
        total += ensure_attempts(engine, Notification.from_row(row), now=now)
    if total:
        logger.info("attempts_backfilled", extra={"count": total})
    return total


def list_attempts(engine: Engine, notification_id: str) -> list[dict[str, Any]]:
    with engine.connect() as conn:
        rows = (
            conn.execute(
                sa.select(NOTIFICATION_ATTEMPTS)
                .where(NOTIFICATION_ATTEMPTS.c.notification_id == notification_id)
                .order_by(NOTIFICATION_ATTEMPTS.c.created_at)
            )
            .mappings()
            .all()
        )
    return [dict(r) for r in rows]


__all__ = [
    "AttemptStatus",
    "Channel",
    "EnsureResult",
    "Notification",
    "NotificationDoc",
    "NotificationKind",
    "TERMINAL_STATUSES",
    "backfill_missing_attempts",
    "ensure_attempts",
    "ensure_notification_once",
    "find_notification",
    "list_attempts",
]
