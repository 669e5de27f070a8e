from __future__ import annotations

from datetime import timedelta

import sqlalchemy as sa

from agents.notify_delivery.base import SendResult, TransportError
from agents.notify_delivery.push import TokenResult
from agents.notify_delivery.runner import DeliveryWorker
from agents.notify_delivery.transports import PushTransport, register_transport
from backend.core.notifications.attempts import claim_next, get_attempt, mark_sent, sweep_abandoned
from backend.core.notifications.store import (
    Channel,
    NotificationDoc,
    NotificationKind,
    ensure_notification_once,
    list_attempts,
)
from backend.core.observability.metrics import get_counter
from backend.core.schema import DEVICES
from backend.core.side_effects import side_effects

LEASE = timedelta(seconds=60)


class ScriptedTransport:
    name = "scripted"

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def send(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else SendResult(ok=True, provider_message_id="m-last")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGateway:
    def __init__(self, results):
        self.results = results
        self.calls = []

    def send(self, tokens, title, body, data):
        self.calls.append(list(tokens))
        return [TokenResult(token=t, **self.results[t]) for t in tokens]


def _queue(engine, clock, channels=(Channel.IN_APP,), customer_id=None, max_attempts=None, key="k-1"):
    doc = NotificationDoc(
        user_id="user-1",
        kind=NotificationKind.OVERDUE_ALERT,
        title="Overdue: Asha Traders",
        body="Asha Traders has overdue payments. Total: ₹1,500",
        channels=channels,
        customer_id=customer_id,
        metadata={"deeplink": "ledger://customer/c?tab=recovery", "bill_id": None},
    )
    return ensure_notification_once(engine, key, doc, now=clock.now(), max_attempts=max_attempts).notification


def _attempt(engine, notification_id):
    (attempt,) = list_attempts(engine, notification_id)
    return attempt


def _retryable():
    return TransportError("UNAVAILABLE", "provider down", retryable=True)


def test_three_retryable_failures_then_success(engine, clock):
    transport = ScriptedTransport(_retryable(), _retryable(), _retryable(), SendResult(ok=True, provider_message_id="m-4"))
    register_transport("IN_APP", transport)
    notification = _queue(engine, clock)
    worker = DeliveryWorker(engine, clock=clock)

    for _ in range(4):
        worker.run_once()
        clock.advance(hours=1)

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "SENT"
    assert attempt["attempt_no"] == 4
    assert attempt["provider_message_id"] == "m-4"
    assert attempt["lease_token"] is None
    assert len(transport.requests) == 4
    assert transport.requests[0].destinations == ["user-1"]
    assert transport.requests[0].data["notification_id"] == notification.id
    assert "bill_id" not in transport.requests[0].data


def test_retry_waits_for_backoff(engine, clock):
    register_transport("IN_APP", ScriptedTransport(_retryable()))
    notification = _queue(engine, clock)
    worker = DeliveryWorker(engine, clock=clock)

    assert worker.run_once()["retry"] == 1
    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "QUEUED"
    assert attempt["next_attempt_at"] == clock.now() + timedelta(seconds=60)
    assert attempt["last_error"]["code"] == "UNAVAILABLE"

    clock.advance(seconds=59)
    assert worker.run_once()["sent"] == 0
    clock.advance(seconds=1)
    assert worker.run_once()["sent"] == 1


def test_dead_exactly_at_max_attempts_with_growing_delays(engine, clock):
    register_transport("IN_APP", ScriptedTransport(*[_retryable() for _ in range(10)]))
    notification = _queue(engine, clock)
    worker = DeliveryWorker(engine, clock=clock)

    delays = []
    for _ in range(5):
        now = clock.now()
        worker.run_once()
        attempt = _attempt(engine, notification.id)
        if attempt["status"] == "QUEUED":
            delays.append((attempt["next_attempt_at"] - now).total_seconds())
        clock.advance(hours=2)

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "DEAD"
    assert attempt["attempt_no"] == 5
    assert delays == [60, 120, 240, 480]
    assert get_counter("delivery_dead_total", {"channel": "IN_APP"}) == 1

    clock.advance(days=1)
    assert worker.run_once()["dead"] == 0


def test_non_retryable_failure_is_dead_immediately(engine, clock):
    register_transport("IN_APP", ScriptedTransport(TransportError("BAD_PAYLOAD", retryable=False)))
    notification = _queue(engine, clock)

    assert DeliveryWorker(engine, clock=clock).run_once()["dead"] == 1
    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "DEAD"
    assert attempt["attempt_no"] == 1
    assert attempt["last_error"] == {"code": "BAD_PAYLOAD", "message": "BAD_PAYLOAD", "retryable": False}


def test_unexpected_transport_exception_is_retried(engine, clock):
    register_transport("IN_APP", ScriptedTransport(RuntimeError("bug")))
    notification = _queue(engine, clock)

    assert DeliveryWorker(engine, clock=clock).run_once()["retry"] == 1
    assert _attempt(engine, notification.id)["last_error"]["code"] == "UNEXPECTED"


def test_push_without_devices_is_dead(engine, clock):
    register_transport("PUSH", PushTransport(gateway=FakeGateway({})))
    notification = _queue(engine, clock, channels=(Channel.PUSH,))

    DeliveryWorker(engine, clock=clock).run_once()

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "DEAD"
    assert attempt["last_error"]["code"] == "NO_DESTINATION"


def test_invalid_push_tokens_are_dead_and_cleaned(engine, clock, seed):
    seed.device(push_token="tok-1")
    seed.device(push_token="tok-2")
    gateway = FakeGateway(
        {
            "tok-1": {"ok": False, "error_code": "messaging/registration-token-not-registered"},
            "tok-2": {"ok": False, "error_code": "UNREGISTERED"},
        }
    )
    register_transport("PUSH", PushTransport(gateway=gateway))
    notification = _queue(engine, clock, channels=(Channel.PUSH,))

    DeliveryWorker(engine, clock=clock).run_once()
    side_effects.drain()

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "DEAD"
    assert attempt["last_error"]["code"] == "INVALID_DESTINATION"
    with engine.connect() as conn:
        tokens = [r.push_token for r in conn.execute(sa.select(DEVICES.c.push_token))]
    assert tokens == [None, None]


def test_partial_push_success_is_sent_and_cleans_bad_token(engine, clock, seed):
    seed.device(push_token="tok-good")
    seed.device(push_token="tok-bad")
    gateway = FakeGateway(
        {
            "tok-good": {"ok": True, "message_id": "fcm-1"},
            "tok-bad": {"ok": False, "error_code": "UNREGISTERED"},
        }
    )
    register_transport("PUSH", PushTransport(gateway=gateway))
    notification = _queue(engine, clock, channels=(Channel.PUSH,))

    DeliveryWorker(engine, clock=clock).run_once()
    side_effects.drain()

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "SENT"
    assert attempt["provider_message_id"] == "fcm-1"
    with engine.connect() as conn:
        tokens = sorted(r.push_token for r in conn.execute(sa.select(DEVICES.c.push_token)) if r.push_token)
    assert tokens == ["tok-good"]


def test_provider_outage_on_push_is_retried(engine, clock, seed):
    seed.device(push_token="tok-1")
    register_transport("PUSH", PushTransport(gateway=FakeGateway({"tok-1": {"ok": False, "error_code": "UNAVAILABLE"}})))
    notification = _queue(engine, clock, channels=(Channel.PUSH,))

    DeliveryWorker(engine, clock=clock).run_once()

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "QUEUED"
    assert attempt["last_error"]["code"] == "PUSH_UNAVAILABLE"


def test_unconfigured_channel_is_dead(engine, clock, seed):
    customer = seed.customer()
    notification = _queue(engine, clock, channels=(Channel.SMS,), customer_id=customer["id"])

    DeliveryWorker(engine, clock=clock).run_once()

    assert _attempt(engine, notification.id)["last_error"]["code"] == "PROVIDER_NOT_CONFIGURED"


def test_single_lease_holder(engine, clock):
    notification = _queue(engine, clock)

    first = claim_next(engine, clock.now(), LEASE)
    second = claim_next(engine, clock.now(), LEASE)

    assert first is not None and first.notification_id == notification.id
    assert first.attempt_no == 1
    assert second is None


def test_expired_lease_is_reclaimed_and_stale_worker_cannot_write(engine, clock):
    _queue(engine, clock)
    stale = claim_next(engine, clock.now(), LEASE)

    clock.advance(seconds=61)
    fresh = claim_next(engine, clock.now(), LEASE)

    assert fresh is not None
    assert fresh.attempt_no == 2
    assert fresh.lease_token != stale.lease_token
    assert mark_sent(engine, stale, clock.now(), "late") is False
    assert mark_sent(engine, fresh, clock.now(), "ok") is True
    assert get_attempt(engine, fresh.id)["provider_message_id"] == "ok"


def test_abandoned_attempt_at_max_is_swept_to_dead(engine, clock):
    notification = _queue(engine, clock, max_attempts=1)
    assert claim_next(engine, clock.now(), LEASE) is not None

    clock.advance(seconds=61)
    assert claim_next(engine, clock.now(), LEASE) is None
    assert sweep_abandoned(engine, clock.now()) == 1

    attempt = _attempt(engine, notification.id)
    assert attempt["status"] == "DEAD"
    assert attempt["last_error"]["code"] == "LEASE_EXPIRED"


def test_batch_is_bounded(engine, clock):
    for i in range(5):
        _queue(engine, clock, key=f"k-{i}")

    counts = DeliveryWorker(engine, clock=clock).run_once(batch_size=3)

    assert counts["sent"] == 3
    assert DeliveryWorker(engine, clock=clock).run_once(batch_size=3)["sent"] == 2
