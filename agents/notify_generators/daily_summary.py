from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.recovery.dto import ACTIVE_CASE_STATUSES
from backend.core.business import BusinessSettings
from backend.core.clock import date_key, end_of_day, start_of_day
from backend.core.notifications.store import NotificationKind
from backend.core.schema import FOLLOWUP_TASKS, RECOVERY_CASES

from .base import GeneratorStats, emit
from .bills import bill_windows, count_customers
from .channels import ChannelSelector
from .templates import deeplink


@dataclass(frozen=True)
class DailyCounts:
    overdue_customers: int
    due_today_customers: int
    promises_due_today: int
    followups_due: int

    @property
    def empty(self) -> bool:
        return not (self.overdue_customers or self.due_today_customers or self.promises_due_today or self.followups_due)


def daily_counts(engine: Engine, user_id: str, now: datetime, tz: ZoneInfo | None = None) -> DailyCounts:
    today_start = start_of_day(now, tz)
    today_end = end_of_day(now, tz)
    with engine.connect() as conn:
        windows = bill_windows(now, tz)
        overdue = count_customers(conn, user_id, *windows[NotificationKind.OVERDUE_ALERT])
        due_today = count_customers(conn, user_id, *windows[NotificationKind.DUE_TODAY])
        promises = conn.execute(
            sa.select(sa.func.count())
            .select_from(RECOVERY_CASES)
            .where(RECOVERY_CASES.c.user_id == user_id)
            .where(RECOVERY_CASES.c.status.in_(ACTIVE_CASE_STATUSES))
            .where(RECOVERY_CASES.c.promise_at >= today_start)
            .where(RECOVERY_CASES.c.promise_at <= today_end)
        ).scalar_one()
        followups = conn.execute(
            sa.select(sa.func.count())
            .select_from(FOLLOWUP_TASKS)
            .where(FOLLOWUP_TASKS.c.user_id == user_id)
            .where(FOLLOWUP_TASKS.c.status == "pending")
            .where(FOLLOWUP_TASKS.c.is_deleted.is_(False))
            .where(FOLLOWUP_TASKS.c.due_at >= today_start)
            .where(FOLLOWUP_TASKS.c.due_at <= today_end)
        ).scalar_one()
    return DailyCounts(overdue, due_today, promises, followups)


def generate_daily_summary(
    engine: Engine,
    business: BusinessSettings,
    now: datetime,
    selector: ChannelSelector,
    tz: ZoneInfo | None = None,
) -> GeneratorStats:
    """One summary per business per day; nothing is sent on an empty day."""
    stats = GeneratorStats("daily_summary")
    counts = daily_counts(engine, business.user_id, now, tz)
    if counts.empty:
        stats.skipped += 1
        return stats

    key = f"{NotificationKind.DAILY_SUMMARY.value}:{business.user_id}:{date_key(now, tz)}"
    result = emit(
        engine,
        business,
        kind=NotificationKind.DAILY_SUMMARY,
        key=key,
        now=now,
        channels=selector.select(business),
        entity_type="system",
        entity_id="system",
        link=deeplink("today"),
        render={
            "overdue_customers": counts.overdue_customers,
            "due_today_customers": counts.due_today_customers,
            "promises_due_today": counts.promises_due_today,
            "followups_due": counts.followups_due,
        },
        extra={
            "overdue_customers": counts.overdue_customers,
            "due_today_customers": counts.due_today_customers,
            "promises_due_today": counts.promises_due_today,
            "followups_due": counts.followups_due,
        },
    )
    stats.record(result)
    return stats
