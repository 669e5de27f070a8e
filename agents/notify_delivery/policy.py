from __future__ import annotations

from datetime import datetime, timedelta

from backend.core.config import settings

from .base import TransportError

# Codes that never succeed on retry regardless of the transport's flag
NON_RETRYABLE_CODES = frozenset({"PROVIDER_NOT_CONFIGURED", "NO_DESTINATION", "INVALID_DESTINATION"})


def backoff_seconds(attempt: int) -> int:
    """Delay after the ``attempt``-th failed call: base * 2^(attempt-1), capped."""
    base = settings.DELIVERY_BACKOFF_BASE_S
    return min(base * 2 ** max(attempt - 1, 0), settings.DELIVERY_BACKOFF_MAX_S)


def next_attempt_time(now: datetime, attempt: int) -> datetime:
    return now + timedelta(seconds=backoff_seconds(attempt))


def is_retryable(error: TransportError) -> bool:
    return error.retryable and error.code not in NON_RETRYABLE_CODES


def should_retry(error: TransportError, attempt_no: int, max_attempts: int) -> bool:
    return is_retryable(error) and attempt_no < max_attempts
