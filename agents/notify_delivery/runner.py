from __future__ import annotations

import time
from datetime import timedelta
from typing import Any

from sqlalchemy.engine import Engine

from backend.core.clock import Clock, default_clock
from backend.core.config import settings
from backend.core.db import get_engine
from backend.core.notifications.attempts import (
    ClaimedAttempt,
    claim_next,
    load_notification,
    mark_dead,
    mark_sent,
    schedule_retry,
    sweep_abandoned,
)
from backend.core.notifications.store import backfill_missing_attempts
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import (
    increment_delivery_claimed,
    increment_delivery_dead,
    increment_delivery_retried,
    increment_delivery_sent,
    record_delivery_duration,
    record_delivery_lag,
)
from backend.core.side_effects import DetachedRunner, side_effects

from .base import DeliveryRequest, SendResult, TransportError
from .destinations import clear_invalid_destinations, push_data, resolve_destinations
from .policy import next_attempt_time, should_retry
from .transports import get_transport

logger = get_logger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_RETRY = "retry"
OUTCOME_DEAD = "dead"
OUTCOME_LOST = "lease_lost"


class DeliveryWorker:
    """Claims due attempts one at a time and records each outcome."""

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        clock: Clock | None = None,
        lease_s: int | None = None,
        detached: DetachedRunner | None = None,
    ) -> None:
        self.engine = engine or get_engine()
        self.clock = clock or default_clock
        self.lease = timedelta(seconds=lease_s or settings.DELIVERY_LEASE_S)
        self.detached = detached or side_effects

    def claim(self) -> ClaimedAttempt | None:
        return claim_next(self.engine, self.clock.now(), self.lease)

    def process(self, claim: ClaimedAttempt) -> str:
        t0 = time.time()
        now = self.clock.now()
        increment_delivery_claimed()
        record_delivery_lag(max(0.0, (now - claim.next_attempt_at).total_seconds() * 1000.0))

        notification = load_notification(self.engine, claim.notification_id)
        if notification is None:
            error = TransportError("NOTIFICATION_MISSING", claim.notification_id, retryable=False)
            return self._dead(claim, error, t0)

        transport = get_transport(claim.channel)
        request = DeliveryRequest(
            channel=claim.channel,
            destinations=resolve_destinations(self.engine, claim.channel, notification),
            title=notification["title"],
            body=notification["body"],
            data=push_data(notification),
        )
        try:
            result: SendResult = transport.send(request)
        except TransportError as e:
            return self._failed(claim, e, notification, t0)
        except Exception as e:
            # Unclassified transport bug: retry, the attempt cap bounds it
            return self._failed(claim, TransportError("UNEXPECTED", str(e), retryable=True), notification, t0)

        if not result.ok:
            return self._failed(claim, TransportError("SEND_FAILED", retryable=True), notification, t0)

        now = self.clock.now()
        if not mark_sent(self.engine, claim, now, result.provider_message_id):
            return OUTCOME_LOST
        increment_delivery_sent(claim.channel)
        self._cleanup(claim, notification, result.invalid_destinations)
        self._audit("attempt_sent", claim, transport.name, t0, provider_message_id=result.provider_message_id)
        return OUTCOME_SENT

    def _failed(self, claim: ClaimedAttempt, error: TransportError, notification, t0: float) -> str:
        self._cleanup(claim, notification, error.invalid_destinations)
        if not should_retry(error, claim.attempt_no, claim.max_attempts):
            return self._dead(claim, error, t0)

        now = self.clock.now()
        next_at = next_attempt_time(now, claim.attempt_no)
        if not schedule_retry(self.engine, claim, now, next_at, error.to_dict()):
            return OUTCOME_LOST
        increment_delivery_retried(claim.channel)
        self._audit("attempt_retry_scheduled", claim, None, t0, error=error.code, next_attempt_at=next_at.isoformat())
        return OUTCOME_RETRY

    def _dead(self, claim: ClaimedAttempt, error: TransportError, t0: float) -> str:
        if not mark_dead(self.engine, claim, self.clock.now(), error.to_dict()):
            return OUTCOME_LOST
        increment_delivery_dead(claim.channel)
        logger.warning(
            "attempt_dead",
            extra={
                "attempt_id": claim.id,
                "notification_id": claim.notification_id,
                "channel": claim.channel,
                "attempt_no": claim.attempt_no,
                "error": error.code,
                "retryable": error.retryable,
            },
        )
        record_delivery_duration((time.time() - t0) * 1000.0, claim.channel)
        return OUTCOME_DEAD

    def _cleanup(self, claim: ClaimedAttempt, notification, invalid: list[str]) -> None:
        if not invalid or notification is None:
            return
        self.detached.submit(
            "destination_cleanup",
            clear_invalid_destinations,
            self.engine,
            claim.channel,
            notification["user_id"],
            list(invalid),
            self.clock.now(),
        )

    def _audit(self, event: str, claim: ClaimedAttempt, transport: str | None, t0: float, **fields: Any) -> None:
        duration_ms = (time.time() - t0) * 1000.0
        record_delivery_duration(duration_ms, claim.channel)
        self.detached.submit(
            "delivery_audit",
            logger.info,
            event,
            extra={
                "attempt_id": claim.id,
                "notification_id": claim.notification_id,
                "channel": claim.channel,
                "attempt_no": claim.attempt_no,
                "transport": transport,
                "duration_ms": duration_ms,
                **fields,
            },
        )

    def run_once(self, batch_size: int | None = None) -> dict[str, int]:
        """Deliver up to batch_size due attempts.

        Returns counts per outcome."""
        limit = batch_size or settings.DELIVERY_BATCH_SIZE
        counts = {OUTCOME_SENT: 0, OUTCOME_RETRY: 0, OUTCOME_DEAD: 0, OUTCOME_LOST: 0, "errors": 0}

        now = self.clock.now()
        counts["abandoned_dead"] = sweep_abandoned(self.engine, now)
        counts["backfilled"] = backfill_missing_attempts(self.engine, now=now)

        for _ in range(limit):
            claim = self.claim()
            if claim is None:
                break
            try:
                counts[self.process(claim)] += 1
            except Exception:
                # Lease expiry hands the attempt to a later run
                counts["errors"] += 1
                logger.exception("attempt_processing_error", extra={"attempt_id": claim.id, "channel": claim.channel})
        return counts


def run_once(
    engine: Engine | None = None, clock: Clock | None = None, batch_size: int | None = None
) -> dict[str, int]:
    return DeliveryWorker(engine, clock=clock).run_once(batch_size)
