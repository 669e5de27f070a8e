"""Create notification, attempt, cron lock and recovery tables

Revision ID: 20261018_recovery_engine_baseline
Revises:
Create Date: 2026-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_recovery_engine_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "business_settings",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("business_id", sa.String(64), nullable=True),
        sa.Column("recovery_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_followup_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("channels_enabled", JSONB, nullable=True),
        sa.Column("feature_kill_switches", JSONB, nullable=True),
        sa.Column("escalation_ladder", JSONB, nullable=True),
        _ts("updated_at"),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_customers_user_id", "customers", ["user_id"])

    op.create_table(
        "bills",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("bill_no", sa.String(64), nullable=True),
        sa.Column("grand_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("paid_amount", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        _ts("due_date"),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_bills_user_status_due_date", "bills", ["user_id", "status", "due_date"])

    op.create_table(
        "recovery_cases",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        _ts("promise_at"),
        sa.Column("promise_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("outstanding_snapshot", sa.Numeric(14, 2), nullable=True),
        sa.Column("promise_status", sa.String(16), nullable=False, server_default=sa.text("'NONE'")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("broken_promises_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _ts("last_promise_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_recovery_cases_user_status_promise_at", "recovery_cases", ["user_id", "status", "promise_at"]
    )

    op.create_table(
        "followup_tasks",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        _ts("due_at", nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("followup_status", sa.String(16), nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("balance", sa.Numeric(14, 2), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("source", sa.String(32), nullable=False, server_default=sa.text("'MANUAL'")),
        sa.Column("parent_followup_id", sa.String(64), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_followup_tasks_user_idempotency_key"),
    )
    op.create_index("ix_followup_tasks_status_due_at", "followup_tasks", ["status", "due_at"])

    op.create_table(
        "devices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("push_token", sa.String(512), nullable=True),
        _ts("push_token_updated_at"),
    )
    op.create_index("ix_devices_user_id", "devices", ["user_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("channels", JSONB, nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB, nullable=False),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_notifications_user_idempotency_key"),
    )
    op.create_index("ix_notifications_user_created_at", "notifications", ["user_id", "created_at"])

    op.create_table(
        "notification_attempts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        _ts("next_attempt_at", nullable=False),
        _ts("leased_until"),
        sa.Column("lease_token", sa.String(36), nullable=True),
        sa.Column("last_error", JSONB, nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        _ts("sent_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint(
            "notification_id", "channel", name="uq_notification_attempts_notification_channel"
        ),
    )
    op.create_index(
        "ix_notification_attempts_status_next_attempt_at",
        "notification_attempts",
        ["status", "next_attempt_at"],
    )
    op.create_index(
        "ix_notification_attempts_status_leased_until",
        "notification_attempts",
        ["status", "leased_until"],
    )

    op.create_table(
        "cron_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=True),
        _ts("locked_until", nullable=False),
        _ts("last_execution_at"),
        sa.Column("last_execution_status", sa.String(16), nullable=True),
        sa.Column("last_execution_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_stats", JSONB, nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )


def downgrade() -> None:
    op.drop_table("cron_locks")
    op.drop_index("ix_notification_attempts_status_leased_until", table_name="notification_attempts")
    op.drop_index("ix_notification_attempts_status_next_attempt_at", table_name="notification_attempts")
    op.drop_table("notification_attempts")
    op.drop_index("ix_notifications_user_created_at", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_devices_user_id", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_followup_tasks_status_due_at", table_name="followup_tasks")
    op.drop_table("followup_tasks")
    op.drop_index("ix_recovery_cases_user_status_promise_at", table_name="recovery_cases")
    op.drop_table("recovery_cases")
    op.drop_index("ix_bills_user_status_due_date", table_name="bills")
    op.drop_table("bills")
    op.drop_index("ix_customers_user_id", table_name="customers")
    op.drop_table("customers")
    op.drop_table("business_settings")
