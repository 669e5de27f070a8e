from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy.engine import Engine

from backend.core.business import BusinessSettings
from backend.core.notifications.store import (
    Channel,
    EnsureResult,
    NotificationDoc,
    NotificationKind,
    ensure_notification_once,
)

from .templates import build_payload, render_title_body


@dataclass
class GeneratorStats:
    generator: str
    created: int = 0
    existing: int = 0
    skipped: int = 0

    def record(self, result: EnsureResult) -> None:
        if result.created:
            self.created += 1
        else:
            self.existing += 1

    def merge(self, other: "GeneratorStats") -> None:
        self.created += other.created
        self.existing += other.existing
        self.skipped += other.skipped

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def emit(
    engine: Engine,
    business: BusinessSettings,
    *,
    kind: NotificationKind,
    key: str,
    now: datetime,
    channels: Sequence[Channel],
    entity_type: str,
    entity_id: str,
    link: str,
    customer_id: str | None = None,
    bill_id: str | None = None,
    render: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> EnsureResult:
    """Render and store one notification under ``key``."""
    title, body = render_title_body(kind, **(render or {}))
    metadata = build_payload(
        kind=kind,
        entity_type=entity_type,
        entity_id=entity_id,
        customer_id=customer_id,
        bill_id=bill_id,
        occurred_at=now,
        idempotency_key=key,
        link=link,
        **(extra or {}),
    )
    doc = NotificationDoc(
        user_id=business.user_id,
        business_id=business.business_id,
        customer_id=customer_id,
        kind=kind,
        title=title,
        body=body,
        channels=channels,
        metadata=metadata,
    )
    return ensure_notification_once(engine, key, doc, now=now)
