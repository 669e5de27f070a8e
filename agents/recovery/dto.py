"""Data Transfer Objects for recovery cases, follow-up tasks and escalation results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


class PromiseStatus(str, Enum):
    NONE = "NONE"
    DUE_TODAY = "DUE_TODAY"
    UPCOMING = "UPCOMING"
    OVERDUE = "OVERDUE"
    BROKEN = "BROKEN"


class FollowupStatus(str, Enum):
    OPEN = "OPEN"
    DUE_TODAY = "DUE_TODAY"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    ESCALATED = "ESCALATED"


MAX_ESCALATION_LEVEL = 3
MAX_PRIORITY = 5

# Case statuses that keep a promise alive
ACTIVE_CASE_STATUSES = ("open", "promised")
CLOSED_CASE_STATUSES = frozenset({"paid", "resolved", "dropped"})


@dataclass
class RecoveryCase:
    """Recovery case fields read and written by the escalation engine."""

    id: str
    user_id: str
    customer_id: str
    status: str = "open"
    promise_at: Optional[datetime] = None
    promise_amount: Optional[Decimal] = None
    outstanding_snapshot: Optional[Decimal] = None
    promise_status: str = PromiseStatus.NONE.value
    priority: int = 0
    escalation_level: int = 0
    broken_promises_count: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RecoveryCase":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            customer_id=row["customer_id"],
            status=row["status"],
            promise_at=row.get("promise_at"),
            promise_amount=row.get("promise_amount"),
            outstanding_snapshot=row.get("outstanding_snapshot"),
            promise_status=row.get("promise_status") or PromiseStatus.NONE.value,
            priority=row.get("priority") or 0,
            escalation_level=row.get("escalation_level") or 0,
            broken_promises_count=row.get("broken_promises_count") or 0,
        )

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_CASE_STATUSES


@dataclass
class FollowupTask:
    """Follow-up task fields read and written by the escalation engine."""

    id: str
    user_id: str
    customer_id: str
    due_at: Optional[datetime]
    channel: str = "whatsapp"
    status: str = "pending"
    escalation_level: int = 0
    source: str = "MANUAL"
    balance: Optional[Decimal] = None
    note: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FollowupTask":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            customer_id=row["customer_id"],
            due_at=row.get("due_at"),
            channel=row.get("channel") or "whatsapp",
            status=row.get("status") or "pending",
            escalation_level=row.get("escalation_level") or 0,
            source=row.get("source") or "MANUAL",
            balance=row.get("balance"),
            note=row.get("note"),
        )


@dataclass(frozen=True)
class EscalationDecision:
    should_escalate: bool
    new_level: int
    reason: str
    days_overdue: int = 0


@dataclass(frozen=True)
class PromiseBreak:
    """Result of checking whether an overdue promise should be marked BROKEN."""

    should_mark_broken: bool
    new_priority: int = 0
    followup_due_at: Optional[datetime] = None
    days_overdue: int = 0


@dataclass(frozen=True)
class RescheduleDecision:
    should_reschedule: bool
    new_due_at: Optional[datetime] = None
    escalation_level: int = 0
    followup_status: Optional[FollowupStatus] = None
    days_overdue: int = 0
