"""FOLLOWUP_DUE generator.

Runs every generator tick; a follow-up is picked up while its due time lies in
``[now - 30min, now + 15min]``, so consecutive ticks overlap. The idempotency
key is bucketed on the hour of the due time, which makes every tick that sees
the same follow-up resolve to the same notification.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.business import BusinessSettings
from backend.core.clock import hour_key
from backend.core.config import settings
from backend.core.notifications.store import NotificationKind
from backend.core.observability.logging import get_logger
from backend.core.schema import CUSTOMERS, FOLLOWUP_TASKS

from .base import GeneratorStats, emit
from .channels import ChannelSelector
from .templates import customer_link

logger = get_logger(__name__)


def followup_due_key(customer_id: str, followup_id: str, due_at: datetime, tz: ZoneInfo | None = None) -> str:
    return f"{NotificationKind.FOLLOWUP_DUE.value}:{customer_id}:{followup_id}:{hour_key(due_at, tz)}"


def generate_followup_due(
    engine: Engine,
    business: BusinessSettings,
    now: datetime,
    selector: ChannelSelector,
    tz: ZoneInfo | None = None,
) -> GeneratorStats:
    stats = GeneratorStats("followup_due")
    if not business.auto_followup_enabled:
        return stats

    window_start = now - timedelta(minutes=settings.FOLLOWUP_WINDOW_BEFORE_MIN)
    window_end = now + timedelta(minutes=settings.FOLLOWUP_WINDOW_AFTER_MIN)

    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(
                FOLLOWUP_TASKS.c.id,
                FOLLOWUP_TASKS.c.customer_id,
                FOLLOWUP_TASKS.c.due_at,
                FOLLOWUP_TASKS.c.balance,
                CUSTOMERS.c.name.label("customer_name"),
            )
            .join(CUSTOMERS, CUSTOMERS.c.id == FOLLOWUP_TASKS.c.customer_id)
            .where(FOLLOWUP_TASKS.c.user_id == business.user_id)
            .where(FOLLOWUP_TASKS.c.status == "pending")
            .where(FOLLOWUP_TASKS.c.is_deleted.is_(False))
            .where(FOLLOWUP_TASKS.c.due_at >= window_start)
            .where(FOLLOWUP_TASKS.c.due_at <= window_end)
            .where(CUSTOMERS.c.is_deleted.is_(False))
            .order_by(FOLLOWUP_TASKS.c.due_at)
            .limit(settings.GENERATOR_ITEM_LIMIT)
        ).fetchall()

    if not rows:
        return stats

    channels = selector.select(business)
    for row in rows:
        try:
            key = followup_due_key(row.customer_id, row.id, row.due_at, tz)
            result = emit(
                engine,
                business,
                kind=NotificationKind.FOLLOWUP_DUE,
                key=key,
                now=now,
                channels=channels,
                entity_type="followup",
                entity_id=row.id,
                customer_id=row.customer_id,
                link=customer_link(row.customer_id, "followups"),
                render={"customer_name": row.customer_name, "amount": row.balance},
                extra={"due_at": row.due_at.isoformat()},
            )
            stats.record(result)
        except Exception:
            stats.skipped += 1
            logger.exception(
                "generator_item_failed",
                extra={"generator": stats.generator, "followup_id": row.id, "user_id": business.user_id},
            )
    return stats
