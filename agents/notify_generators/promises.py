"""PROMISE_DUE_TODAY and PROMISE_BROKEN generators.

One notification per recovery case per business day; the bucket comes from
``promise_status`` evaluated in the business timezone.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.recovery.dto import ACTIVE_CASE_STATUSES, PromiseStatus
from agents.recovery.escalation import promise_status
from backend.core.business import BusinessSettings
from backend.core.clock import date_key, end_of_day
from backend.core.config import settings
from backend.core.notifications.store import NotificationKind
from backend.core.observability.logging import get_logger
from backend.core.schema import CUSTOMERS, RECOVERY_CASES

from .base import GeneratorStats, emit
from .channels import ChannelSelector
from .templates import customer_link

logger = get_logger(__name__)


def promise_key(kind: NotificationKind, customer_id: str, case_id: str, now: datetime, tz: ZoneInfo | None = None) -> str:
    return f"{kind.value}:{customer_id}:{case_id}:{date_key(now, tz)}"


def classify_promise(promise_at: datetime, stored_status: str, now: datetime, tz: ZoneInfo | None = None) -> NotificationKind | None:
    bucket = promise_status(promise_at, now, tz)
    if bucket is PromiseStatus.DUE_TODAY:
        return NotificationKind.PROMISE_DUE_TODAY
    if bucket is PromiseStatus.OVERDUE or stored_status == PromiseStatus.BROKEN.value:
        return NotificationKind.PROMISE_BROKEN
    return None


def generate_promise_notifications(
    engine: Engine,
    business: BusinessSettings,
    now: datetime,
    selector: ChannelSelector,
    tz: ZoneInfo | None = None,
) -> GeneratorStats:
    stats = GeneratorStats("promises")
    if not business.recovery_enabled:
        return stats

    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(
                RECOVERY_CASES.c.id,
                RECOVERY_CASES.c.customer_id,
                RECOVERY_CASES.c.promise_at,
                RECOVERY_CASES.c.promise_status,
                RECOVERY_CASES.c.promise_amount,
                RECOVERY_CASES.c.outstanding_snapshot,
                CUSTOMERS.c.name.label("customer_name"),
            )
            .join(CUSTOMERS, CUSTOMERS.c.id == RECOVERY_CASES.c.customer_id)
            .where(RECOVERY_CASES.c.user_id == business.user_id)
            .where(RECOVERY_CASES.c.status.in_(ACTIVE_CASE_STATUSES))
            .where(RECOVERY_CASES.c.promise_at.is_not(None))
            .where(RECOVERY_CASES.c.promise_at <= end_of_day(now, tz))
            .where(CUSTOMERS.c.is_deleted.is_(False))
            .order_by(RECOVERY_CASES.c.promise_at)
            .limit(settings.GENERATOR_ITEM_LIMIT)
        ).fetchall()

    if not rows:
        return stats

    channels = selector.select(business)
    for row in rows:
        try:
            kind = classify_promise(row.promise_at, row.promise_status, now, tz)
            if kind is None:
                continue
            tab = "promises" if kind is NotificationKind.PROMISE_DUE_TODAY else "recovery"
            amount = row.promise_amount if row.promise_amount is not None else row.outstanding_snapshot
            result = emit(
                engine,
                business,
                kind=kind,
                key=promise_key(kind, row.customer_id, row.id, now, tz),
                now=now,
                channels=channels,
                entity_type="recovery_case",
                entity_id=row.id,
                customer_id=row.customer_id,
                link=customer_link(row.customer_id, tab),
                render={"customer_name": row.customer_name, "amount": amount},
                extra={"promise_at": row.promise_at.isoformat()},
            )
            stats.record(result)
        except Exception:
            stats.skipped += 1
            logger.exception(
                "generator_item_failed",
                extra={"generator": stats.generator, "case_id": row.id, "user_id": business.user_id},
            )
    return stats
