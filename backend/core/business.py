"""Read-only view of per-business settings used by the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.config import settings
from backend.core.schema import BUSINESS_SETTINGS

DEFAULT_CHANNELS_ENABLED = {"whatsapp": True, "sms": False, "push": True}


@dataclass(frozen=True)
class BusinessSettings:
    user_id: str
    business_id: str
    recovery_enabled: bool = False
    auto_followup_enabled: bool = False
    channels_enabled: dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_CHANNELS_ENABLED))
    kill_switches: dict[str, bool] = field(default_factory=dict)
    escalation_ladder: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BusinessSettings":
        channels = dict(DEFAULT_CHANNELS_ENABLED)
        channels.update({k: bool(v) for k, v in (row.get("channels_enabled") or {}).items()})
        return cls(
            user_id=row["user_id"],
            business_id=row.get("business_id") or row["user_id"],
            recovery_enabled=bool(row.get("recovery_enabled")),
            auto_followup_enabled=bool(row.get("auto_followup_enabled")),
            channels_enabled=channels,
            kill_switches={k: bool(v) for k, v in (row.get("feature_kill_switches") or {}).items()},
            escalation_ladder=row.get("escalation_ladder"),
        )

    @property
    def notifications_enabled(self) -> bool:
        """False when the global or this business's notification kill switch is on."""
        if not settings.NOTIFICATIONS_ENABLED:
            return False
        return not self.kill_switches.get("notifications", False)

    def channel_enabled(self, channel: str) -> bool:
        return bool(self.channels_enabled.get(channel.lower(), False))


def get_business_settings(engine: Engine, user_id: str) -> BusinessSettings | None:
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(BUSINESS_SETTINGS).where(BUSINESS_SETTINGS.c.user_id == user_id)
        ).mappings().first()
    return BusinessSettings.from_row(row) if row else None


def iter_business_settings(engine: Engine, *, page_size: int | None = None) -> Iterator[BusinessSettings]:
    """Yield every business's settings, paging by ``user_id``."""
    page_size = page_size or settings.GENERATOR_USER_BATCH
    last: str | None = None
    while True:
        stmt = sa.select(BUSINESS_SETTINGS).order_by(BUSINESS_SETTINGS.c.user_id).limit(page_size)
        if last is not None:
            stmt = stmt.where(BUSINESS_SETTINGS.c.user_id > last)
        with engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        if not rows:
            return
        for row in rows:
            yield BusinessSettings.from_row(row)
        last = rows[-1]["user_id"]
        if len(rows) < page_size:
            return


def set_notifications_kill_switch(engine: Engine, user_id: str, active: bool) -> bool:
    """Turn a business's notification kill switch on or off; False if unknown."""
    with engine.begin() as conn:
        row = conn.execute(
            sa.select(BUSINESS_SETTINGS.c.feature_kill_switches).where(BUSINESS_SETTINGS.c.user_id == user_id)
        ).first()
        if row is None:
            return False
        switches = dict(row.feature_kill_switches or {})
        switches["notifications"] = active
        conn.execute(
            sa.update(BUSINESS_SETTINGS)
            .where(BUSINESS_SETTINGS.c.user_id == user_id)
            .values(feature_kill_switches=switches)
        )
    return True


__all__ = [
    "BusinessSettings",
    "get_business_settings",
    "iter_business_settings",
    "set_notifications_kill_switch",
]
