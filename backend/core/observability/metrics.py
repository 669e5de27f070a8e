"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage; jobs run on separate threads
_lock = threading.Lock()
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 10:
            metrics["buckets"]["<10"] += 1
        elif value < 100:
            metrics["buckets"]["10-100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        elif value < 10000:
            metrics["buckets"]["1000-10000"] += 1
        else:
            metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}
            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )
            result[key] = metric_result
    return result


def get_counter(name: str, labels: dict[str, str] = None) -> float:
    with _lock:
        data = _metrics.get(_key(name, labels))
        return data["count"] if data else 0.0


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Notification generation
def increment_notifications_created(kind: str) -> None:
    increment_counter("notifications_created_total", {"kind": kind})


def increment_notifications_existing(kind: str) -> None:
    increment_counter("notifications_existing_total", {"kind": kind})


def increment_generator_skipped(generator: str, n: float = 1.0) -> None:
    increment_counter("generator_skipped_total", {"generator": generator}, value=n)


# Delivery worker
def increment_delivery_claimed() -> None:
    increment_counter("delivery_claimed_total")


def increment_delivery_sent(channel: str) -> None:
    increment_counter("delivery_sent_total", {"channel": channel})


def increment_delivery_retried(channel: str) -> None:
    increment_counter("delivery_retried_total", {"channel": channel})


def increment_delivery_dead(channel: str) -> None:
    increment_counter("delivery_dead_total", {"channel": channel})


def record_delivery_duration(duration_ms: float, channel: str) -> None:
    record_histogram("delivery_duration_ms", duration_ms, {"channel": channel})


def record_delivery_lag(lag_ms: float) -> None:
    """Time between an attempt becoming due and being claimed."""
    record_histogram("delivery_lag_ms", lag_ms)


# Cron locks and periodic jobs
def increment_lock_acquired(lock_name: str) -> None:
    increment_counter("cron_lock_acquired_total", {"lock": lock_name})


def increment_lock_skipped(lock_name: str) -> None:
    increment_counter("cron_lock_skipped_total", {"lock": lock_name})


def record_job_duration(job: str, duration_ms: float) -> None:
    record_histogram("job_duration_ms", duration_ms, {"job": job})


def increment_job_failures(job: str) -> None:
    increment_counter("job_failures_total", {"job": job})
