"""Escalation state machine for payment promises and follow-up tasks.

Pure functions only: every decision is derived from timestamps and the
entity's current fields, with ``now`` injected by the caller. Day boundaries
are taken in the business timezone so the result does not depend on where the
process runs.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from backend.core.clock import at_local_time, end_of_day, ensure_aware, start_of_day, to_local

from .config import EscalationLadder
from .dto import (
    ACTIVE_CASE_STATUSES,
    MAX_ESCALATION_LEVEL,
    MAX_PRIORITY,
    EscalationDecision,
    FollowupStatus,
    FollowupTask,
    PromiseBreak,
    PromiseStatus,
    RecoveryCase,
    RescheduleDecision,
)

DAY = timedelta(days=1)

# Local wall-clock slots used when rescheduling
EVENING_HOUR = 18
MORNING_HOUR = 10


def promise_status(promise_at: datetime | None, now: datetime, tz: ZoneInfo | None = None) -> PromiseStatus:
    if promise_at is None:
        return PromiseStatus.NONE
    promise_at = ensure_aware(promise_at)
    if promise_at < start_of_day(now, tz):
        return PromiseStatus.OVERDUE
    if promise_at <= end_of_day(now, tz):
        return PromiseStatus.DUE_TODAY
    return PromiseStatus.UPCOMING


def promise_days_overdue(promise_at: datetime | None, now: datetime) -> int:
    """Whole days elapsed since the promise, floored; 0 when not yet due."""
    if promise_at is None:
        return 0
    return max(0, (ensure_aware(now) - ensure_aware(promise_at)) // DAY)


def evaluate_promise_escalation(
    case: RecoveryCase, now: datetime, ladder: EscalationLadder | None = None
) -> EscalationDecision:
    """Decide whether a recovery case must move up the escalation ladder.

    Each level fires once: the decision only escalates when the case's
    current level is below the level its lateness calls for, so repeated
    evaluation with a later ``now`` never lowers or repeats a level.
    """
    ladder = ladder or EscalationLadder.default()
    current = case.escalation_level or 0

    if case.is_closed:
        return EscalationDecision(False, current, "CASE_CLOSED")
    if case.promise_at is None:
        return EscalationDecision(False, current, "NO_PROMISE")

    days = promise_days_overdue(case.promise_at, now)
    if days < ladder.level_1_days:
        return EscalationDecision(False, current, "NOT_OVERDUE", days)

    target = ladder.target_level(days)
    if current >= target:
        return EscalationDecision(False, current, f"ALREADY_AT_LEVEL_{current}", days)

    reason = f"OVERDUE_{days}D_TO_LEVEL_{target}"
    if target == MAX_ESCALATION_LEVEL:
        reason += "_CRITICAL"
    return EscalationDecision(True, target, reason, days)


def auto_escalate_overdue_promise(case: RecoveryCase, now: datetime, tz: ZoneInfo | None = None) -> PromiseBreak:
    """Mark an overdue promise BROKEN and suggest when to follow up."""
    if case.status not in ACTIVE_CASE_STATUSES:
        return PromiseBreak(False)
    if promise_status(case.promise_at, now, tz) is not PromiseStatus.OVERDUE:
        return PromiseBreak(False)
    if case.promise_status == PromiseStatus.BROKEN.value:
        return PromiseBreak(False)

    if to_local(now, tz).hour < EVENING_HOUR:
        followup_at = at_local_time(now, EVENING_HOUR, tz=tz)
    else:
        followup_at = at_local_time(now, MORNING_HOUR, days=1, tz=tz)

    return PromiseBreak(
        should_mark_broken=True,
        new_priority=min((case.priority or 0) + 1, MAX_PRIORITY),
        followup_due_at=followup_at,
        days_overdue=promise_days_overdue(case.promise_at, now),
    )


def get_followup_status(
    due_at: datetime | None,
    now: datetime,
    status: str = "pending",
    escalation_level: int = 0,
    tz: ZoneInfo | None = None,
) -> FollowupStatus:
    if status == "done":
        return FollowupStatus.COMPLETED
    if due_at is None:
        return FollowupStatus.OPEN
    if (escalation_level or 0) >= MAX_ESCALATION_LEVEL:
        return FollowupStatus.ESCALATED

    due_at = ensure_aware(due_at)
    if due_at < start_of_day(now, tz):
        return FollowupStatus.OVERDUE
    if due_at <= end_of_day(now, tz):
        return FollowupStatus.DUE_TODAY
    return FollowupStatus.OPEN


def followup_days_overdue(due_at: datetime | None, now: datetime, tz: ZoneInfo | None = None) -> int:
    """Days between the due time and the start of today, rounded up."""
    if due_at is None:
        return 0
    today = start_of_day(now, tz)
    due_at = ensure_aware(due_at)
    if due_at >= today:
        return 0
    return math.ceil((today - due_at) / DAY)


def auto_reschedule_overdue_followup(
    task: FollowupTask, now: datetime, tz: ZoneInfo | None = None
) -> RescheduleDecision:
    """Reschedule a missed follow-up one rung further up the ladder.

    First miss: today 18:00 (tomorrow 18:00 when already past 18:00).
    Second miss: tomorrow 10:00. Third and later: three days out at 10:00,
    marked ESCALATED.
    """
    status = get_followup_status(task.due_at, now, task.status, task.escalation_level, tz)
    if status is not FollowupStatus.OVERDUE or task.status != "pending":
        return RescheduleDecision(False)

    next_level = (task.escalation_level or 0) + 1
    if next_level == 1:
        if to_local(now, tz).hour < EVENING_HOUR:
            new_due = at_local_time(now, EVENING_HOUR, tz=tz)
        else:
            new_due = at_local_time(now, EVENING_HOUR, days=1, tz=tz)
    elif next_level == 2:
        new_due = at_local_time(now, MORNING_HOUR, days=1, tz=tz)
    else:
        new_due = at_local_time(now, MORNING_HOUR, days=3, tz=tz)

    if next_level >= MAX_ESCALATION_LEVEL:
        new_status = FollowupStatus.ESCALATED
    else:
        new_status = get_followup_status(new_due, now, "pending", next_level, tz)

    return RescheduleDecision(
        should_reschedule=True,
        new_due_at=new_due,
        escalation_level=min(next_level, MAX_ESCALATION_LEVEL),
        followup_status=new_status,
        days_overdue=followup_days_overdue(task.due_at, now, tz),
    )
