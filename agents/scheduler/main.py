"""Command line entry point for the periodic jobs."""

from __future__ import annotations

import argparse
import json
import sys

from backend.core.config import settings
from backend.core.cron_lock import list_lock_status
from backend.core.db import get_engine
from backend.core.observability import init_observability
from backend.core.side_effects import side_effects

from .jobs import build_tasks
from .periodic import Scheduler


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recovery and notification engine jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    once = sub.add_parser("run-once", help="Run a single tick of one job")
    once.add_argument(
        "job",
        choices=["notification_generation", "daily_summary", "notification_delivery", "recovery_task_processing"],
    )
    sub.add_parser("serve", help="Run all periodic jobs until SIGINT/SIGTERM")
    sub.add_parser("status", help="Print cron lock bookkeeping as JSON")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    init_observability(enable_metrics=settings.enable_metrics)
    engine = get_engine()

    try:
        if args.command == "status":
            print(json.dumps(list_lock_status(engine), ensure_ascii=False))
            return 0

        tasks = build_tasks(engine)
        if args.command == "run-once":
            result = tasks[args.job].tick()
            print(json.dumps(result, default=str, ensure_ascii=False))
            return 0

        return Scheduler(list(tasks.values())).run_forever()
    except KeyboardInterrupt:
        return 130
    finally:
        side_effects.drain()


if __name__ == "__main__":
    sys.exit(main())
