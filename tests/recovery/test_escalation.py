from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from agents.recovery.config import EscalationLadder
from agents.recovery.dto import FollowupStatus, FollowupTask, PromiseStatus, RecoveryCase
from agents.recovery.escalation import (
    auto_escalate_overdue_promise,
    auto_reschedule_overdue_followup,
    evaluate_promise_escalation,
    followup_days_overdue,
    get_followup_status,
    promise_days_overdue,
    promise_status,
)

IST = ZoneInfo("Asia/Kolkata")
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=IST)


def ist(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=IST)


def _case(promise_at, level=0, status="promised", **kw) -> RecoveryCase:
    return RecoveryCase(
        id="case-1",
        user_id="user-1",
        customer_id="cust-1",
        status=status,
        promise_at=promise_at,
        escalation_level=level,
        **kw,
    )


def _task(due_at, level=0, status="pending") -> FollowupTask:
    return FollowupTask(
        id="fu-1", user_id="user-1", customer_id="cust-1", due_at=due_at, status=status, escalation_level=level
    )


def test_promise_four_days_late_escalates_to_level_two():
    decision = evaluate_promise_escalation(_case(NOW - timedelta(days=4)), NOW, EscalationLadder())

    assert decision.should_escalate is True
    assert decision.new_level == 2
    assert decision.days_overdue == 4
    assert decision.reason == "OVERDUE_4D_TO_LEVEL_2"


def test_escalation_never_repeats_or_lowers_a_level():
    promise_at = NOW - timedelta(days=4)
    ladder = EscalationLadder()

    assert evaluate_promise_escalation(_case(promise_at, level=2), NOW, ladder).reason == "ALREADY_AT_LEVEL_2"
    assert evaluate_promise_escalation(_case(promise_at, level=3), NOW, ladder).new_level == 3

    later = evaluate_promise_escalation(_case(promise_at, level=2), NOW + timedelta(days=3), ladder)
    assert later.should_escalate is True
    assert later.new_level == 3
    assert later.reason.endswith("_CRITICAL")


@pytest.mark.parametrize(
    "days,level",
    [(0, 0), (1, 1), (2, 1), (3, 2), (6, 2), (7, 3), (30, 3)],
)
def test_ladder_boundaries(days, level):
    decision = evaluate_promise_escalation(_case(NOW - timedelta(days=days, minutes=1)), NOW)
    assert (decision.new_level if decision.should_escalate else 0) == level


def test_closed_case_and_missing_promise_never_escalate():
    old = NOW - timedelta(days=10)
    assert evaluate_promise_escalation(_case(old, status="paid"), NOW).reason == "CASE_CLOSED"
    assert evaluate_promise_escalation(_case(None), NOW).reason == "NO_PROMISE"
    assert evaluate_promise_escalation(_case(NOW - timedelta(hours=20)), NOW).reason == "NOT_OVERDUE"


def test_days_overdue_is_floored():
    assert promise_days_overdue(NOW - timedelta(days=2, hours=23), NOW) == 2
    assert promise_days_overdue(NOW + timedelta(days=1), NOW) == 0
    assert promise_days_overdue(None, NOW) == 0


def test_promise_status_buckets():
    assert promise_status(None, NOW, IST) is PromiseStatus.NONE
    assert promise_status(ist(10, 9), NOW, IST) is PromiseStatus.DUE_TODAY
    assert promise_status(ist(10, 23, 59), NOW, IST) is PromiseStatus.DUE_TODAY
    assert promise_status(ist(9, 23, 59), NOW, IST) is PromiseStatus.OVERDUE
    assert promise_status(ist(11, 0, 0), NOW, IST) is PromiseStatus.UPCOMING


def test_promise_status_flips_at_business_midnight():
    promise_at = ist(10, 12)
    assert promise_status(promise_at, ist(10, 23, 59), IST) is PromiseStatus.DUE_TODAY
    assert promise_status(promise_at, ist(11, 0, 1), IST) is PromiseStatus.OVERDUE


def test_promise_status_uses_business_day_not_utc_day():
    # 22:30 IST on the 10th; "now" is 00:30 IST on the 11th but still the 10th in UTC
    promise_at = ist(10, 22, 30)
    now = ist(11, 0, 30)
    assert promise_at.astimezone(ZoneInfo("UTC")).date() == now.astimezone(ZoneInfo("UTC")).date()
    assert promise_status(promise_at, now, IST) is PromiseStatus.OVERDUE


def test_broken_promise_followup_before_evening():
    result = auto_escalate_overdue_promise(_case(ist(8, 12), priority=2), NOW, IST)

    assert result.should_mark_broken is True
    assert result.new_priority == 3
    assert result.followup_due_at == ist(10, 18)
    assert result.days_overdue == 1


def test_broken_promise_followup_after_evening_and_priority_cap():
    result = auto_escalate_overdue_promise(_case(ist(8, 12), priority=5), ist(10, 19), IST)

    assert result.followup_due_at == ist(11, 10)
    assert result.new_priority == 5


def test_broken_promise_is_marked_once():
    case = _case(ist(8, 12), promise_status=PromiseStatus.BROKEN.value)
    assert auto_escalate_overdue_promise(case, NOW, IST).should_mark_broken is False
    assert auto_escalate_overdue_promise(_case(ist(10, 12)), NOW, IST).should_mark_broken is False
    assert auto_escalate_overdue_promise(_case(ist(8, 12), status="paid"), NOW, IST).should_mark_broken is False


def test_followup_status():
    assert get_followup_status(ist(1, 10), NOW, "done", tz=IST) is FollowupStatus.COMPLETED
    assert get_followup_status(None, NOW, tz=IST) is FollowupStatus.OPEN
    assert get_followup_status(ist(1, 10), NOW, escalation_level=3, tz=IST) is FollowupStatus.ESCALATED
    assert get_followup_status(ist(9, 23), NOW, tz=IST) is FollowupStatus.OVERDUE
    assert get_followup_status(ist(10, 20), NOW, tz=IST) is FollowupStatus.DUE_TODAY
    assert get_followup_status(ist(11, 9), NOW, tz=IST) is FollowupStatus.OPEN


def test_followup_days_overdue_rounds_up():
    assert followup_days_overdue(ist(9, 15), NOW, IST) == 1
    assert followup_days_overdue(ist(7, 15), NOW, IST) == 3
    assert followup_days_overdue(ist(10, 8), NOW, IST) == 0
    assert followup_days_overdue(None, NOW, IST) == 0


def test_reschedule_ladder():
    first = auto_reschedule_overdue_followup(_task(ist(9, 11)), NOW, IST)
    assert first.should_reschedule is True
    assert first.new_due_at == ist(10, 18)
    assert first.escalation_level == 1
    assert first.followup_status is FollowupStatus.DUE_TODAY

    second = auto_reschedule_overdue_followup(_task(ist(9, 18), level=1), NOW, IST)
    assert second.new_due_at == ist(11, 10)
    assert second.escalation_level == 2
    assert second.followup_status is FollowupStatus.OPEN

    third = auto_reschedule_overdue_followup(_task(ist(8, 10), level=2), NOW, IST)
    assert third.new_due_at == ist(13, 10)
    assert third.escalation_level == 3
    assert third.followup_status is FollowupStatus.ESCALATED
    assert third.days_overdue == 2


def test_first_reschedule_after_evening_moves_to_tomorrow():
    decision = auto_reschedule_overdue_followup(_task(ist(9, 11)), ist(10, 18, 30), IST)
    assert decision.new_due_at == ist(11, 18)


def test_reschedule_skips_tasks_that_are_not_overdue():
    assert auto_reschedule_overdue_followup(_task(ist(10, 8)), NOW, IST).should_reschedule is False
    assert auto_reschedule_overdue_followup(_task(ist(9, 8), status="done"), NOW, IST).should_reschedule is False
    assert auto_reschedule_overdue_followup(_task(ist(1, 8), level=3), NOW, IST).should_reschedule is False


def test_ladder_overrides(monkeypatch):
    ladder = EscalationLadder.from_business("biz-1", {"level_1_days": 2, "level_2_days": 5, "level_3_days": 10})
    assert (ladder.level_1_days, ladder.level_2_days, ladder.level_3_days) == (2, 5, 10)

    monkeypatch.setenv("RECOVERY_BIZ_1_LEVEL_3_DAYS", "14")
    ladder = EscalationLadder.from_business("biz-1", {"level_1_days": 2, "level_2_days": 5})
    assert ladder.level_3_days == 14
    assert ladder.target_level(13) == 2


def test_ladder_must_increase():
    with pytest.raises(ValueError):
        EscalationLadder(level_1_days=3, level_2_days=3, level_3_days=7)
    with pytest.raises(ValueError):
        EscalationLadder.from_business("biz-1", {"level_2_days": 9})
