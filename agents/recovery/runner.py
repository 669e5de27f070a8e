"""Recovery batch job.

Runs every ``RECOVERY_INTERVAL_S`` under the ``recovery_task_processing`` cron
lock. One run performs three bounded passes, in order:

1. promise escalation: raise ``escalation_level`` of late promises and mark
   them BROKEN, creating an automatic follow-up task for the customer;
2. follow-up reschedule: replace missed pending follow-ups with a
   rescheduled child task one rung up the ladder;
3. dispatch: turn due automatic follow-up tasks into a customer-facing
   RECOVERY_REMINDER notification with a single WHATSAPP or SMS attempt.

Every write is idempotent on its own, so a run cut short by a crash is simply
continued by the next one.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.business import BusinessSettings, get_business_settings
from backend.core.clock import Clock, date_key, default_clock, ensure_aware, get_timezone, start_of_day
from backend.core.config import settings
from backend.core.cron_lock import CronLock, LockedRun
from backend.core.db import get_engine
from backend.core.notifications.store import (
    Channel,
    NotificationDoc,
    NotificationKind,
    ensure_attempts,
    ensure_notification_once,
)
from backend.core.observability.logging import get_logger, log_context
from backend.core.schema import BUSINESS_SETTINGS, CUSTOMERS, FOLLOWUP_TASKS, RECOVERY_CASES

from agents.notify_generators.templates import build_payload, customer_link, render_title_body

from .config import EscalationLadder
from .dto import (
    ACTIVE_CASE_STATUSES,
    MAX_ESCALATION_LEVEL,
    FollowupTask,
    PromiseStatus,
    RecoveryCase,
)
from .escalation import (
    auto_escalate_overdue_promise,
    auto_reschedule_overdue_followup,
    evaluate_promise_escalation,
)

logger = get_logger(__name__)

RECOVERY_LOCK_NAME = "recovery_task_processing"
AUTO_RECOVERY_PREFIX = "AUTO_RECOVERY"
SOURCE_PROMISE_BROKEN = "AUTO_RECOVERY_PROMISE_BROKEN"
SOURCE_RESCHEDULE = "AUTO_RESCHEDULE"
ESCALATION_CURSOR = "escalation_cursor"

CUSTOMER_CHANNELS = (Channel.WHATSAPP, Channel.SMS)


def dispatch_key(task_id: str, channel: Channel | str) -> str:
    return f"FOLLOWUP_TASK:{task_id}:{Channel(channel).value}"


def pick_channel(preferred: str | None, business: BusinessSettings) -> Channel | None:
    """Task's own channel when the business allows it, else the other customer channel."""
    ordered = list(CUSTOMER_CHANNELS)
    if preferred and preferred.upper() in (c.value for c in CUSTOMER_CHANNELS):
        ordered.sort(key=lambda c: c.value != preferred.upper())
    for channel in ordered:
        if business.channel_enabled(channel.value):
            return channel
    return None


class RecoveryJob:
    def __init__(
        self,
        engine: Engine | None = None,
        *,
        clock: Clock | None = None,
        lock: CronLock | None = None,
        batch_size: int | None = None,
        scan_limit: int | None = None,
        tz: ZoneInfo | None = None,
    ) -> None:
        self.engine = engine or get_engine()
        self.clock = clock or default_clock
        self.lock = lock or CronLock(self.engine, clock=self.clock)
        self.batch_size = batch_size or settings.RECOVERY_BATCH_SIZE
        self.scan_limit = scan_limit or settings.RECOVERY_SCAN_LIMIT
        self.tz = tz or get_timezone()
        self._businesses: dict[str, BusinessSettings | None] = {}

    def run(self) -> LockedRun:
        """Run all passes if this process wins the lock; skip silently otherwise."""
        return self.lock.run_locked(
            RECOVERY_LOCK_NAME, timedelta(seconds=settings.RECOVERY_LOCK_S), self.process
        )

    def process(self) -> dict[str, Any]:
        self._businesses = {}
        now = self.clock.now()
        stats: dict[str, Any] = {
            "escalated": 0,
            "marked_broken": 0,
            "rescheduled": 0,
            "dispatched": 0,
            "existing": 0,
            "skipped": 0,
            "errors": 0,
        }
        self.escalate_promises(now, stats)
        self.reschedule_followups(now, stats)
        self.dispatch_due_tasks(now, stats)
        logger.info("recovery_run_complete", extra=stats)
        return stats

    def _business(self, user_id: str) -> BusinessSettings | None:
        if user_id not in self._businesses:
            self._businesses[user_id] = get_business_settings(self.engine, user_id)
        return self._businesses[user_id]

    # --- pass 1 -------------------------------------------------------------

    def _case_page(self, now: datetime, after: tuple[datetime, str] | None) -> list:
        c = RECOVERY_CASES.c
        stmt = (
            sa.select(RECOVERY_CASES)
            .join(BUSINESS_SETTINGS, BUSINESS_SETTINGS.c.user_id == c.user_id)
            .where(BUSINESS_SETTINGS.c.recovery_enabled.is_(True))
            .where(c.status.in_(ACTIVE_CASE_STATUSES))
            .where(c.promise_at.is_not(None))
            .where(c.promise_at < start_of_day(now, self.tz))
            .where(sa.or_(c.escalation_level < MAX_ESCALATION_LEVEL, c.promise_status != PromiseStatus.BROKEN.value))
            .order_by(c.promise_at, c.id)
            .limit(self.batch_size)
        )
        if after is not None:
            promise_at, case_id = after
            stmt = stmt.where(sa.or_(c.promise_at > promise_at, sa.and_(c.promise_at == promise_at, c.id > case_id)))
        with self.engine.connect() as conn:
            return conn.execute(stmt).mappings().all()

    def _resume_cursor(self) -> tuple[datetime, str] | None:
        status = self.lock.get_status(RECOVERY_LOCK_NAME) or {}
        cursor = (status.get("last_stats") or {}).get(ESCALATION_CURSOR)
        if not cursor:
            return None
        try:
            return ensure_aware(datetime.fromisoformat(cursor["promise_at"])), str(cursor["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("recovery_cursor_invalid", extra={"cursor": str(cursor)})
            return None

    def escalate_promises(self, now: datetime, stats: dict[str, Any]) -> None:
        """Walk overdue promises oldest first, resuming where the previous run stopped.

        Only cases that actually change count toward ``batch_size``; at most
        ``scan_limit`` rows are read per run. The position reached is stored
        in the run stats so the next run continues from there.
        """
        cursor = self._resume_cursor()
        wrapped = cursor is None
        acted = scanned = 0
        while acted < self.batch_size and scanned < self.scan_limit:
            rows = self._case_page(now, cursor)
            if not rows:
                cursor = None
                if wrapped:
                    break
                wrapped = True
                continue
            for row in rows:
                scanned += 1
                cursor = (row["promise_at"], row["id"])
                case = RecoveryCase.from_row(row)
                business = self._business(case.user_id)
                if business is not None and business.recovery_enabled:
                    try:
                        with log_context(tenant_id=business.business_id):
                            if self._escalate_case(case, business, now, stats):
                                acted += 1
                    except Exception:
                        stats["errors"] += 1
                        logger.exception("recovery_escalation_failed", extra={"case_id": case.id})
                if acted >= self.batch_size or scanned >= self.scan_limit:
                    break

        stats["cases_scanned"] = scanned
        stats[ESCALATION_CURSOR] = (
            None if cursor is None else {"promise_at": cursor[0].isoformat(), "id": cursor[1]}
        )

    def _escalate_case(self, case: RecoveryCase, business: BusinessSettings, now: datetime, stats: dict[str, Any]) -> bool:
        """Persist a level raise and/or BROKEN marking; True when a row changed."""
        ladder = EscalationLadder.from_business(business.business_id, business.escalation_ladder)
        decision = evaluate_promise_escalation(case, now, ladder)
        broken = auto_escalate_overdue_promise(case, now, self.tz)
        if not decision.should_escalate and not broken.should_mark_broken:
            return False

        changed = False
        with self.engine.begin() as conn:
            if decision.should_escalate:
                res = conn.execute(
                    sa.update(RECOVERY_CASES)
                    .where(RECOVERY_CASES.c.id == case.id)
                    .where(RECOVERY_CASES.c.escalation_level < decision.new_level)
                    .values(escalation_level=decision.new_level, updated_at=now)
                )
                if res.rowcount:
                    stats["escalated"] += 1
                    changed = True
                    logger.info(
                        "promise_escalated",
                        extra={
                            "case_id": case.id,
                            "old_level": case.escalation_level,
                            "new_level": decision.new_level,
                            "reason": decision.reason,
                        },
                    )
            if broken.should_mark_broken:
                res = conn.execute(
                    sa.update(RECOVERY_CASES)
                    .where(RECOVERY_CASES.c.id == case.id)
                    .where(RECOVERY_CASES.c.promise_status != PromiseStatus.BROKEN.value)
                    .values(
                        promise_status=PromiseStatus.BROKEN.value,
                        priority=broken.new_priority,
                        broken_promises_count=RECOVERY_CASES.c.broken_promises_count + 1,
                        last_promise_at=case.promise_at,
                        updated_at=now,
                    )
                )
                if res.rowcount:
                    stats["marked_broken"] += 1
                    changed = True
                    self._create_task(
                        conn,
                        user_id=case.user_id,
                        customer_id=case.customer_id,
                        due_at=broken.followup_due_at,
                        source=SOURCE_PROMISE_BROKEN,
                        key=f"promise_broken:{case.id}:{date_key(case.promise_at, self.tz)}",
                        balance=case.promise_amount if case.promise_amount is not None else case.outstanding_snapshot,
                        note=f"Promise broken ({broken.days_overdue}d overdue)",
                        escalation_level=0,
                        now=now,
                    )
        return changed

    # --- pass 2 -------------------------------------------------------------

    def reschedule_followups(self, now: datetime, stats: dict[str, Any]) -> None:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(FOLLOWUP_TASKS)
                .join(BUSINESS_SETTINGS, BUSINESS_SETTINGS.c.user_id == FOLLOWUP_TASKS.c.user_id)
                .where(
                    sa.or_(
                        BUSINESS_SETTINGS.c.auto_followup_enabled.is_(True),
                        BUSINESS_SETTINGS.c.recovery_enabled.is_(True),
                    )
                )
                .where(FOLLOWUP_TASKS.c.status == "pending")
                .where(FOLLOWUP_TASKS.c.is_deleted.is_(False))
                .where(FOLLOWUP_TASKS.c.due_at < start_of_day(now, self.tz))
                .where(FOLLOWUP_TASKS.c.escalation_level < MAX_ESCALATION_LEVEL)
                .order_by(FOLLOWUP_TASKS.c.due_at)
                .limit(self.batch_size)
            ).mappings().all()

        for row in rows:
            task = FollowupTask.from_row(row)
            business = self._business(task.user_id)
            if business is None or not (business.auto_followup_enabled or business.recovery_enabled):
                continue
            try:
                if self._reschedule_task(task, now):
                    stats["rescheduled"] += 1
            except Exception:
                stats["errors"] += 1
                logger.exception("followup_reschedule_failed", extra={"followup_id": task.id})

    def _reschedule_task(self, task: FollowupTask, now: datetime) -> bool:
        decision = auto_reschedule_overdue_followup(task, now, self.tz)
        if not decision.should_reschedule:
            return False
        key = f"auto_reschedule:{task.id}:{decision.escalation_level}"
        source = task.source if task.source.startswith(AUTO_RECOVERY_PREFIX) else SOURCE_RESCHEDULE
        with self.engine.begin() as conn:
            res = conn.execute(
                sa.update(FOLLOWUP_TASKS)
                .where(FOLLOWUP_TASKS.c.id == task.id)
                .where(FOLLOWUP_TASKS.c.status == "pending")
                .values(status="skipped", followup_status="OVERDUE", updated_at=now)
            )
            if res.rowcount == 0:
                return False
            note = f"Auto-rescheduled ({decision.days_overdue}d overdue)"
            if task.note:
                note = f"{note}: {task.note}"
            self._create_task(
                conn,
                user_id=task.user_id,
                customer_id=task.customer_id,
                due_at=decision.new_due_at,
                source=source,
                key=key,
                balance=task.balance,
                note=note,
                escalation_level=decision.escalation_level,
                followup_status=decision.followup_status.value,
                channel=task.channel,
                parent_id=task.id,
                now=now,
            )
        logger.info(
            "followup_rescheduled",
            extra={
                "followup_id": task.id,
                "escalation_level": decision.escalation_level,
                "new_due_at": decision.new_due_at.isoformat(),
            },
        )
        return True

    @staticmethod
    def _create_task(
        conn,
        *,
        user_id: str,
        customer_id: str,
        due_at: datetime,
        source: str,
        key: str,
        balance,
        note: str,
        escalation_level: int,
        now: datetime,
        followup_status: str = "OPEN",
        channel: str = "whatsapp",
        parent_id: str | None = None,
    ) -> bool:
        """Insert a follow-up task unless one with ``key`` exists for the user."""
        exists = conn.execute(
            sa.select(FOLLOWUP_TASKS.c.id)
            .where(FOLLOWUP_TASKS.c.user_id == user_id)
            .where(FOLLOWUP_TASKS.c.idempotency_key == key)
        ).first()
        if exists is not None:
            return False
        conn.execute(
            sa.insert(FOLLOWUP_TASKS).values(
                id=str(uuid4()),
                user_id=user_id,
                customer_id=customer_id,
                channel=channel,
                due_at=due_at,
                status="pending",
                followup_status=followup_status,
                escalation_level=escalation_level,
                balance=balance,
                note=note,
                source=source,
                parent_followup_id=parent_id,
                idempotency_key=key,
                created_at=now,
                updated_at=now,
            )
        )
        return True

    # --- pass 3 -------------------------------------------------------------

    def dispatch_due_tasks(self, now: datetime, stats: dict[str, Any]) -> None:
        with self.engine.connect() as conn:
            rows = conn.execute(
                sa.select(FOLLOWUP_TASKS, CUSTOMERS.c.name.label("customer_name"))
                .join(CUSTOMERS, CUSTOMERS.c.id == FOLLOWUP_TASKS.c.customer_id)
                .where(FOLLOWUP_TASKS.c.status == "pending")
                .where(FOLLOWUP_TASKS.c.is_deleted.is_(False))
                .where(FOLLOWUP_TASKS.c.due_at <= now)
                .where(FOLLOWUP_TASKS.c.source.like(f"{AUTO_RECOVERY_PREFIX}%"))
                .where(CUSTOMERS.c.is_deleted.is_(False))
                .order_by(FOLLOWUP_TASKS.c.due_at)
                .limit(self.batch_size)
            ).mappings().all()

        for row in rows:
            task = FollowupTask.from_row(row)
            try:
                outcome = self._dispatch_task(task, row["customer_name"], now)
                stats[outcome] += 1
            except Exception:
                stats["errors"] += 1
                logger.exception("recovery_dispatch_failed", extra={"followup_id": task.id})

    def _dispatch_task(self, task: FollowupTask, customer_name: str, now: datetime) -> str:
        business = self._business(task.user_id)
        if business is None or not business.recovery_enabled or not business.notifications_enabled:
            return "skipped"
        channel = pick_channel(task.channel, business)
        if channel is None:
            logger.info("recovery_no_channel", extra={"followup_id": task.id, "user_id": task.user_id})
            return "skipped"

        key = dispatch_key(task.id, channel)
        title, body = render_title_body(
            NotificationKind.RECOVERY_REMINDER, customer_name=customer_name, amount=task.balance
        )
        doc = NotificationDoc(
            user_id=task.user_id,
            business_id=business.business_id,
            customer_id=task.customer_id,
            kind=NotificationKind.RECOVERY_REMINDER,
            title=title,
            body=body,
            channels=[channel],
            metadata=build_payload(
                kind=NotificationKind.RECOVERY_REMINDER,
                entity_type="followup",
                entity_id=task.id,
                customer_id=task.customer_id,
                occurred_at=now,
                idempotency_key=key,
                link=customer_link(task.customer_id, "followups"),
                source=task.source,
                escalation_level=task.escalation_level,
            ),
        )
        result = ensure_notification_once(
            self.engine, key, doc, now=now, max_attempts=settings.RECOVERY_MAX_ATTEMPTS
        )
        if result.created:
            return "dispatched"
        # Existing notification: only repair a missing attempt
        ensure_attempts(self.engine, result.notification, now=now, max_attempts=settings.RECOVERY_MAX_ATTEMPTS)
        return "existing"


def run_once(engine: Engine | None = None, clock: Clock | None = None) -> LockedRun:
    return RecoveryJob(engine, clock=clock).run()
