"""DUE_TODAY and OVERDUE_ALERT generators, grouped per customer per day.

Each kind reads its own due-date window and aggregates bills per customer in
SQL, so the item limit caps customers per kind rather than bills overall.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from backend.core.business import BusinessSettings
from backend.core.clock import at_local_time, date_key, start_of_day
from backend.core.config import settings
from backend.core.notifications.store import NotificationKind
from backend.core.observability.logging import get_logger
from backend.core.schema import BILLS, CUSTOMERS

from .base import GeneratorStats, emit
from .channels import ChannelSelector
from .templates import customer_link, deeplink

logger = get_logger(__name__)

OPEN_BILL_STATUSES = ("unpaid", "partial")
CENTS = Decimal("0.01")

_PENDING = BILLS.c.grand_total - sa.func.coalesce(BILLS.c.paid_amount, 0)


@dataclass
class CustomerBills:
    customer_id: str
    customer_name: str
    pending: Decimal
    bill_count: int
    first_bill_id: str

    @property
    def single_bill_id(self) -> str | None:
        return self.first_bill_id if self.bill_count == 1 else None


def _open_bills(stmt, user_id: str, after: datetime | None, before: datetime):
    """Restrict to owed, open bills of live customers due in ``[after, before)``."""
    stmt = (
        stmt.join(CUSTOMERS, CUSTOMERS.c.id == BILLS.c.customer_id)
        .where(BILLS.c.user_id == user_id)
        .where(BILLS.c.status.in_(OPEN_BILL_STATUSES))
        .where(BILLS.c.is_deleted.is_(False))
        .where(BILLS.c.due_date.is_not(None))
        .where(BILLS.c.due_date < before)
        .where(CUSTOMERS.c.is_deleted.is_(False))
        .where(_PENDING > 0)
    )
    if after is not None:
        stmt = stmt.where(BILLS.c.due_date >= after)
    return stmt


def customer_balances(
    conn: Connection, user_id: str, after: datetime | None, before: datetime, limit: int | None = None
) -> list[CustomerBills]:
    """Per-customer owed totals, customers with the oldest bill first."""
    stmt = _open_bills(
        sa.select(
            BILLS.c.customer_id,
            CUSTOMERS.c.name.label("customer_name"),
            sa.func.sum(_PENDING).label("pending"),
            sa.func.count().label("bill_count"),
            sa.func.min(BILLS.c.id).label("first_bill_id"),
        ).select_from(BILLS),
        user_id,
        after,
        before,
    )
    stmt = stmt.group_by(BILLS.c.customer_id, CUSTOMERS.c.name).order_by(
        sa.func.min(BILLS.c.due_date), BILLS.c.customer_id
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return [
        CustomerBills(r.customer_id, r.customer_name, Decimal(str(r.pending)).quantize(CENTS), r.bill_count, r.first_bill_id)
        for r in conn.execute(stmt)
    ]


def count_customers(conn: Connection, user_id: str, after: datetime | None, before: datetime) -> int:
    stmt = _open_bills(
        sa.select(sa.func.count(sa.distinct(BILLS.c.customer_id))).select_from(BILLS), user_id, after, before
    )
    return conn.execute(stmt).scalar_one()


def bill_windows(now: datetime, tz: ZoneInfo | None = None) -> dict[NotificationKind, tuple[datetime | None, datetime]]:
    """Due-date window of each kind: before today is overdue, today is due."""
    today_start = start_of_day(now, tz)
    return {
        NotificationKind.OVERDUE_ALERT: (None, today_start),
        NotificationKind.DUE_TODAY: (today_start, at_local_time(now, 0, days=1, tz=tz)),
    }


def generate_bill_notifications(
    engine: Engine,
    business: BusinessSettings,
    now: datetime,
    selector: ChannelSelector,
    tz: ZoneInfo | None = None,
) -> GeneratorStats:
    stats = GeneratorStats("bills")
    with engine.connect() as conn:
        slices = {
            kind: customer_balances(conn, business.user_id, after, before, settings.GENERATOR_ITEM_LIMIT)
            for kind, (after, before) in bill_windows(now, tz).items()
        }
    if not any(slices.values()):
        return stats

    channels = selector.select(business)
    day = date_key(now, tz)
    for kind, customers in slices.items():
        for customer in customers:
            try:
                if kind is NotificationKind.DUE_TODAY:
                    link = deeplink("today?filter=dueToday")
                else:
                    link = customer_link(customer.customer_id, "recovery")
                result = emit(
                    engine,
                    business,
                    kind=kind,
                    key=f"{kind.value}:{customer.customer_id}:{day}",
                    now=now,
                    channels=channels,
                    entity_type="customer",
                    entity_id=customer.customer_id,
                    customer_id=customer.customer_id,
                    bill_id=customer.single_bill_id,
                    link=link,
                    render={"customer_name": customer.customer_name, "amount": customer.pending},
                    extra={"bill_count": customer.bill_count, "pending": str(customer.pending)},
                )
                stats.record(result)
            except Exception:
                stats.skipped += 1
                logger.exception(
                    "generator_item_failed",
                    extra={
                        "generator": stats.generator,
                        "customer_id": customer.customer_id,
                        "user_id": business.user_id,
                    },
                )
    return stats
