"""Table definitions for the recovery and notification engine.

The engine owns ``notifications``, ``notification_attempts`` and ``cron_locks``.
The business tables are owned by the CRUD layer; only the columns the engine
reads or writes are declared here.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import MetaData

from backend.core.db import JSONType, UTCDateTime

_METADATA = MetaData()


# --- engine tables ---------------------------------------------------------

NOTIFICATIONS = sa.Table(
    "notifications",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("business_id", sa.String(64), nullable=False),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("customer_id", sa.String(64), nullable=True),
    sa.Column("kind", sa.String(32), nullable=False),
    sa.Column("idempotency_key", sa.String(255), nullable=False),
    sa.Column("channels", JSONType, nullable=False),
    sa.Column("title", sa.String(200), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("metadata", JSONType, nullable=False),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.UniqueConstraint("user_id", "idempotency_key", name="uq_notifications_user_idempotency_key"),
    sa.Index("ix_notifications_user_created_at", "user_id", "created_at"),
)

NOTIFICATION_ATTEMPTS = sa.Table(
    "notification_attempts",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id"), nullable=False),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("channel", sa.String(16), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("attempt_no", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("max_attempts", sa.Integer(), nullable=False),
    sa.Column("next_attempt_at", UTCDateTime, nullable=False),
    sa.Column("leased_until", UTCDateTime, nullable=True),
    sa.Column("lease_token", sa.String(36), nullable=True),
    sa.Column("last_error", JSONType, nullable=True),
    sa.Column("provider_message_id", sa.String(255), nullable=True),
    sa.Column("sent_at", UTCDateTime, nullable=True),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.Column("updated_at", UTCDateTime, nullable=False),
    sa.UniqueConstraint("notification_id", "channel", name="uq_notification_attempts_notification_channel"),
    sa.Index("ix_notification_attempts_status_next_attempt_at", "status", "next_attempt_at"),
    sa.Index("ix_notification_attempts_status_leased_until", "status", "leased_until"),
)

CRON_LOCKS = sa.Table(
    "cron_locks",
    _METADATA,
    sa.Column("name", sa.String(100), primary_key=True),
    sa.Column("owner_id", sa.String(100), nullable=True),
    sa.Column("locked_until", UTCDateTime, nullable=False),
    sa.Column("last_execution_at", UTCDateTime, nullable=True),
    sa.Column("last_execution_status", sa.String(16), nullable=True),
    sa.Column("last_execution_duration_ms", sa.Integer(), nullable=True),
    sa.Column("last_stats", JSONType, nullable=True),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.Column("updated_at", UTCDateTime, nullable=False),
)


# --- business tables (read/written by the engine) --------------------------

BUSINESS_SETTINGS = sa.Table(
    "business_settings",
    _METADATA,
    sa.Column("user_id", sa.String(64), primary_key=True),
    sa.Column("business_id", sa.String(64), nullable=True),
    sa.Column("recovery_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("auto_followup_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("channels_enabled", JSONType, nullable=True),
    sa.Column("feature_kill_switches", JSONType, nullable=True),
    sa.Column("escalation_ladder", JSONType, nullable=True),
    sa.Column("updated_at", UTCDateTime, nullable=True),
)

CUSTOMERS = sa.Table(
    "customers",
    _METADATA,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False, index=True),
    sa.Column("name", sa.String(200), nullable=False),
    sa.Column("phone", sa.String(32), nullable=True),
    sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
)

BILLS = sa.Table(
    "bills",
    _METADATA,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("customer_id", sa.String(64), nullable=False),
    sa.Column("bill_no", sa.String(64), nullable=True),
    sa.Column("grand_total", sa.Numeric(14, 2), nullable=False),
    sa.Column("paid_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
    sa.Column("due_date", UTCDateTime, nullable=True),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Index("ix_bills_user_status_due_date", "user_id", "status", "due_date"),
)

RECOVERY_CASES = sa.Table(
    "recovery_cases",
    _METADATA,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("customer_id", sa.String(64), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("promise_at", UTCDateTime, nullable=True),
    sa.Column("promise_amount", sa.Numeric(14, 2), nullable=True),
    sa.Column("outstanding_snapshot", sa.Numeric(14, 2), nullable=True),
    sa.Column("promise_status", sa.String(16), nullable=False, server_default=sa.text("'NONE'")),
    sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("escalation_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("broken_promises_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_promise_at", UTCDateTime, nullable=True),
    sa.Column("updated_at", UTCDateTime, nullable=True),
    sa.Index("ix_recovery_cases_user_status_promise_at", "user_id", "status", "promise_at"),
)

FOLLOWUP_TASKS = sa.Table(
    "followup_tasks",
    _METADATA,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("customer_id", sa.String(64), nullable=False),
    sa.Column("channel", sa.String(16), nullable=False),
    sa.Column("due_at", UTCDateTime, nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("followup_status", sa.String(16), nullable=False, server_default=sa.text("'OPEN'")),
    sa.Column("escalation_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("balance", sa.Numeric(14, 2), nullable=True),
    sa.Column("note", sa.Text(), nullable=True),
    sa.Column("source", sa.String(32), nullable=False, server_default=sa.text("'MANUAL'")),
    sa.Column("parent_followup_id", sa.String(64), nullable=True),
    sa.Column("idempotency_key", sa.String(255), nullable=True),
    sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.Column("updated_at", UTCDateTime, nullable=True),
    sa.UniqueConstraint("user_id", "idempotency_key", name="uq_followup_tasks_user_idempotency_key"),
    sa.Index("ix_followup_tasks_status_due_at", "status", "due_at"),
)

DEVICES = sa.Table(
    "devices",
    _METADATA,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False, index=True),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("push_token", sa.String(512), nullable=True),
    sa.Column("push_token_updated_at", UTCDateTime, nullable=True),
)


__all__ = [
    "_METADATA",
    "NOTIFICATIONS",
    "NOTIFICATION_ATTEMPTS",
    "CRON_LOCKS",
    "BUSINESS_SETTINGS",
    "CUSTOMERS",
    "BILLS",
    "RECOVERY_CASES",
    "FOLLOWUP_TASKS",
    "DEVICES",
]
