"""Resolve where an attempt is sent and clean up references a provider rejected."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.notifications.store import Channel
from backend.core.observability.logging import get_logger
from backend.core.schema import CUSTOMERS, DEVICES

logger = get_logger(__name__)


def push_tokens(engine: Engine, user_id: str) -> list[str]:
    with engine.connect() as conn:
        rows = conn.execute(
            sa.select(DEVICES.c.push_token)
            .where(DEVICES.c.user_id == user_id)
            .where(DEVICES.c.status == "TRUSTED")
            .where(DEVICES.c.push_token.is_not(None))
            .where(DEVICES.c.push_token != "")
            .order_by(DEVICES.c.id)
        ).fetchall()
    # Several devices can share a token after a restore
    return list(dict.fromkeys(r.push_token for r in rows))


def customer_phone(engine: Engine, customer_id: str | None) -> str | None:
    if not customer_id:
        return None
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(CUSTOMERS.c.phone)
            .where(CUSTOMERS.c.id == customer_id)
            .where(CUSTOMERS.c.is_deleted.is_(False))
        ).first()
    return row.phone if row and row.phone else None


def resolve_destinations(engine: Engine, channel: str, notification: Mapping[str, Any]) -> list[str]:
    if channel == Channel.IN_APP.value:
        return [notification["user_id"]]
    if channel == Channel.PUSH.value:
        return push_tokens(engine, notification["user_id"])
    phone = customer_phone(engine, notification["customer_id"])
    return [phone] if phone else []


def push_data(notification: Mapping[str, Any]) -> dict[str, str]:
    """Flatten notification metadata into the string map push payloads require."""
    data = {k: str(v) for k, v in (notification["metadata"] or {}).items() if v is not None}
    data["notification_id"] = notification["id"]
    data.setdefault("kind", notification["kind"])
    return data


def clear_invalid_destinations(
    engine: Engine, channel: str, user_id: str, destinations: list[str], now: datetime
) -> int:
    """Drop references the provider reported as permanently invalid.

    Push tokens are removed from the user's devices so future passes no longer
    select PUSH for them. Phone numbers belong to the customer record and are
    only logged.
    """
    if not destinations:
        return 0
    if channel != Channel.PUSH.value:
        logger.warning(
            "destination_rejected",
            extra={"channel": channel, "user_id": user_id, "count": len(destinations)},
        )
        return 0
    with engine.begin() as conn:
        res = conn.execute(
            sa.update(DEVICES)
            .where(DEVICES.c.user_id == user_id)
            .where(DEVICES.c.push_token.in_(destinations))
            .values(push_token=None, push_token_updated_at=now)
        )
    logger.info("push_tokens_removed", extra={"user_id": user_id, "count": res.rowcount})
    return res.rowcount
