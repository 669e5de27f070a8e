from __future__ import annotations

import time
from typing import Any, Callable, Sequence

from sqlalchemy.engine import Engine

from backend.core.business import BusinessSettings, iter_business_settings
from backend.core.clock import Clock, default_clock, get_timezone
from backend.core.config import settings
from backend.core.db import get_engine
from backend.core.observability.logging import get_logger, log_context
from backend.core.observability.metrics import increment_generator_skipped, record_job_duration

from .base import GeneratorStats
from .bills import generate_bill_notifications
from .channels import ChannelSelector
from .daily_summary import generate_daily_summary
from .followups import generate_followup_due
from .promises import generate_promise_notifications

logger = get_logger(__name__)

Generator = Callable[..., GeneratorStats]

# Generators that run on every tick
INTERVAL_GENERATORS: tuple[Generator, ...] = (
    generate_followup_due,
    generate_promise_notifications,
    generate_bill_notifications,
)


def _run(
    job: str,
    generators: Sequence[Generator],
    engine: Engine | None,
    clock: Clock | None,
    selector: ChannelSelector | None,
) -> dict[str, Any]:
    engine = engine or get_engine()
    clock = clock or default_clock
    now = clock.now()
    tz = get_timezone()

    if not settings.NOTIFICATIONS_ENABLED:
        logger.info("generators_disabled", extra={"generator_job": job, "reason": "kill_switch"})
        return {"disabled": True}

    t0 = time.time()
    # One selector per run: its cache never outlives the pass
    selector = selector or ChannelSelector(engine, clock=clock)
    totals = {g.__name__: GeneratorStats(g.__name__) for g in generators}
    businesses = 0
    disabled = 0

    for business in iter_business_settings(engine):
        if not business.notifications_enabled:
            disabled += 1
            continue
        businesses += 1
        with log_context(tenant_id=business.business_id):
            for gen in generators:
                totals[gen.__name__].merge(_run_one(gen, engine, business, now, selector, tz))

    summary: dict[str, Any] = {
        "businesses": businesses,
        "businesses_disabled": disabled,
        "generators": {name: s.to_dict() for name, s in totals.items()},
    }
    duration_ms = (time.time() - t0) * 1000.0
    record_job_duration(job, duration_ms)
    logger.info("generators_run_complete", extra={"generator_job": job, "duration_ms": duration_ms, **summary})
    return summary


def _run_one(gen: Generator, engine: Engine, business: BusinessSettings, now, selector, tz) -> GeneratorStats:
    try:
        return gen(engine, business, now, selector, tz)
    except Exception:
        # One business must not stop the pass for the others
        increment_generator_skipped(gen.__name__)
        logger.exception(
            "generator_business_failed",
            extra={"generator": gen.__name__, "user_id": business.user_id},
        )
        return GeneratorStats(gen.__name__, skipped=1)


def run_once(
    engine: Engine | None = None,
    clock: Clock | None = None,
    selector: ChannelSelector | None = None,
) -> dict[str, Any]:
    """Run the follow-up, promise and bill generators for every business."""
    return _run("notification_generation", INTERVAL_GENERATORS, engine, clock, selector)


def run_daily_summary(
    engine: Engine | None = None,
    clock: Clock | None = None,
    selector: ChannelSelector | None = None,
) -> dict[str, Any]:
    return _run("daily_summary", (generate_daily_summary,), engine, clock, selector)
