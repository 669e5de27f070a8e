"""Notification and delivery-attempt persistence."""

from .store import (
    AttemptStatus,
    Channel,
    EnsureResult,
    Notification,
    NotificationDoc,
    NotificationKind,
    ensure_notification_once,
)

__all__ = [
    "AttemptStatus",
    "Channel",
    "EnsureResult",
    "Notification",
    "NotificationDoc",
    "NotificationKind",
    "ensure_notification_once",
]
