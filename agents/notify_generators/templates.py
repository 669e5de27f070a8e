"""Title/body rendering, deep links and metadata payloads for notifications."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined

from backend.core.config import settings
from backend.core.notifications.store import NotificationKind

_TITLES = {
    NotificationKind.OVERDUE_ALERT: "Overdue: {{ customer_name }}",
    NotificationKind.DUE_TODAY: "Due Today: {{ customer_name }}",
    NotificationKind.PROMISE_DUE_TODAY: "Promise Due Today: {{ customer_name }}",
    NotificationKind.PROMISE_BROKEN: "Broken Promise: {{ customer_name }}",
    NotificationKind.FOLLOWUP_DUE: "Follow-up Due: {{ customer_name }}",
    NotificationKind.DAILY_SUMMARY: "Daily Summary",
    NotificationKind.RECOVERY_REMINDER: "Payment reminder",
}

_BODIES = {
    NotificationKind.OVERDUE_ALERT: "{{ customer_name }} has overdue payments. Total: {{ amount | inr }}",
    NotificationKind.DUE_TODAY: "{{ customer_name }} has payments due today. Amount: {{ amount | inr }}",
    NotificationKind.PROMISE_DUE_TODAY: (
        "{{ customer_name }}'s payment promise is due today. Amount: {{ amount | inr }}"
    ),
    NotificationKind.PROMISE_BROKEN: (
        "{{ customer_name }} broke their payment promise. Amount: {{ amount | inr }}"
    ),
    NotificationKind.FOLLOWUP_DUE: "Follow-up reminder for {{ customer_name }}. Amount due: {{ amount | inr }}",
    NotificationKind.DAILY_SUMMARY: (
        "Overdue: {{ overdue_customers }}, Due Today: {{ due_today_customers }}, "
        "Promises: {{ promises_due_today }}, Follow-ups: {{ followups_due }}"
    ),
    NotificationKind.RECOVERY_REMINDER: (
        "Dear {{ customer_name }}, a payment of {{ amount | inr }} is pending. "
        "Please clear it at the earliest."
    ),
}


def format_inr(amount: Any) -> str:
    """Format an amount as whole rupees with Indian digit grouping (e.g. ₹1,23,456)."""
    try:
        value = Decimal(str(amount if amount is not None else 0))
    except (InvalidOperation, ValueError):
        return "₹0"
    if not value.is_finite():
        return "₹0"
    sign = "-" if value < 0 else ""
    digits = str(int(abs(value).quantize(Decimal("1"))))
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups + [tail])
    return f"{sign}₹{digits}"


def _build_env() -> Environment:
    templates = {}
    for kind, source in _TITLES.items():
        templates[f"{kind.value}.title"] = source
    for kind, source in _BODIES.items():
        templates[f"{kind.value}.body"] = source
    env = Environment(
        loader=DictLoader(templates),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["inr"] = format_inr
    return env


_ENV = _build_env()


def render_title_body(kind: NotificationKind | str, **context: Any) -> tuple[str, str]:
    kind = NotificationKind(kind)
    context.setdefault("customer_name", "Customer")
    context.setdefault("amount", 0)
    title = _ENV.get_template(f"{kind.value}.title").render(**context)
    body = _ENV.get_template(f"{kind.value}.body").render(**context)
    return title, body


def deeplink(path: str) -> str:
    return f"{settings.DEEPLINK_SCHEME}://{path}"


def customer_link(customer_id: str, tab: str) -> str:
    return deeplink(f"customer/{customer_id}?tab={tab}")


def build_payload(
    *,
    kind: NotificationKind | str,
    entity_type: str,
    entity_id: str,
    occurred_at: datetime,
    idempotency_key: str,
    link: str,
    customer_id: str | None = None,
    bill_id: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Metadata stored with a notification and forwarded as push data."""
    payload = {
        "kind": NotificationKind(kind).value,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "customer_id": str(customer_id) if customer_id else None,
        "bill_id": str(bill_id) if bill_id else None,
        "occurred_at": occurred_at.isoformat(),
        "idempotency_key": idempotency_key,
        "deeplink": link,
    }
    payload.update(extra)
    return payload
