"""Toggle a business's notifications kill switch for backout."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict

from sqlalchemy.engine import Engine

from backend.core.business import set_notifications_kill_switch
from backend.core.clock import default_clock
from backend.core.db import get_engine
from backend.core.observability.logging import get_logger

logger = get_logger(__name__)


def apply_kill_switch(*, engine: Engine, user_id: str, active: bool, reason: str) -> Dict[str, Any]:
    """Persist the switch state and return a report payload."""
    found = set_notifications_kill_switch(engine, user_id, active)
    payload = {
        "user_id": user_id,
        "kill_switch": active,
        "found": found,
        "reason": reason,
        "updated_at": default_clock.now().isoformat(),
    }
    if found:
        logger.warning("notifications_kill_switch_set", extra={"tenant_id": user_id, "active": active, "reason": reason})
    return payload


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Toggle notifications kill switch for one business")
    parser.add_argument("--user", required=True, help="Business owner id")
    parser.add_argument("--reason", default="", help="Backout reason")
    parser.add_argument("--off", action="store_true", help="Release the kill switch instead of activating it")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(argv)
        payload = apply_kill_switch(
            engine=get_engine(), user_id=args.user, active=not args.off, reason=args.reason
        )
        print(json.dumps(payload, ensure_ascii=False))
        if not payload["found"]:
            print(f"unknown business {args.user}", file=sys.stderr)
            return 2
        state = "ON" if payload["kill_switch"] else "OFF"
        print(f"KILL SWITCH {state} for {args.user} - reason={payload['reason'] or '-'}")
        return 0
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
