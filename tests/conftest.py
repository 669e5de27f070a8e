import inspect
import json
import os
import socket
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import httpx
import pytest
import sqlalchemy as sa

from agents.notify_delivery.transports import reset_transports
from backend.core.clock import FrozenClock
from backend.core.db import create_db_engine
from backend.core.observability.metrics import reset_metrics
from backend.core.schema import (
    BILLS,
    BUSINESS_SETTINGS,
    CUSTOMERS,
    DEVICES,
    FOLLOWUP_TASKS,
    RECOVERY_CASES,
    _METADATA,
)
from backend.core.side_effects import side_effects

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"

# 2026-03-10 10:00 in Asia/Kolkata
T0 = datetime(2026, 3, 10, 4, 30, tzinfo=UTC)


def _is_allowed_callstack(allowed_paths: list[str]) -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        for ap in allowed_paths:
            if ap in filename:
                return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    allowed_client_paths = [
        "/tests/",
        "/agents/notify_delivery/",
    ]

    # Allow DB host/port as exception
    db_url = os.environ.get("DATABASE_URL", "")
    db_host = None
    db_port = None
    if "@" in db_url:
        hostport = db_url.split("@", 1)[1].split("/", 1)[0]
        if ":" in hostport:
            db_host, port = hostport.split(":", 1)
            db_port = int(port) if port.isdigit() else None
        else:
            db_host, db_port = hostport, 5432

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if db_host and isinstance(host, str) and host == db_host:
            return real_getaddrinfo(host, *args, **kwargs)
        if _is_allowed_callstack(allowed_client_paths):
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        host, port = None, None
        if isinstance(address, tuple) and len(address) >= 2:
            host, port = address[0], address[1]
        if (db_host and host == db_host) or (db_port and port == db_port):
            return real_create_connection(address, *args, **kwargs)
        if _is_allowed_callstack(allowed_client_paths):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_httpx_init(self, *args, **kwargs):
        if not _is_allowed_callstack(allowed_client_paths):
            VIOLATIONS.append({"fn": "httpx.Client.__init__"})
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def _isolated_state():
    reset_metrics()
    reset_transports()
    yield
    side_effects.drain()
    reset_transports()


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'engine.db'}")
    _METADATA.create_all(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def clock():
    return FrozenClock(T0)


class Seeder:
    """Inserts business rows the engine reads."""

    def __init__(self, engine, clock):
        self.engine = engine
        self.clock = clock

    def _insert(self, table, values):
        with self.engine.begin() as conn:
            conn.execute(sa.insert(table).values(**values))
        return values

    def business(self, user_id="user-1", **overrides):
        values = {
            "user_id": user_id,
            "business_id": f"biz-{user_id}",
            "recovery_enabled": True,
            "auto_followup_enabled": True,
            "channels_enabled": {"whatsapp": True, "sms": False, "push": True},
            "feature_kill_switches": {},
        }
        values.update(overrides)
        return self._insert(BUSINESS_SETTINGS, values)

    def customer(self, user_id="user-1", name="Asha Traders", phone="+919800000001", **overrides):
        values = {"id": f"cust-{uuid4().hex[:8]}", "user_id": user_id, "name": name, "phone": phone}
        values.update(overrides)
        return self._insert(CUSTOMERS, values)

    def bill(self, customer_id, due_date, user_id="user-1", total="1500.00", paid="0", **overrides):
        values = {
            "id": f"bill-{uuid4().hex[:8]}",
            "user_id": user_id,
            "customer_id": customer_id,
            "grand_total": Decimal(total),
            "paid_amount": Decimal(paid),
            "due_date": due_date,
            "status": "unpaid",
        }
        values.update(overrides)
        return self._insert(BILLS, values)

    def case(self, customer_id, promise_at, user_id="user-1", **overrides):
        values = {
            "id": f"case-{uuid4().hex[:8]}",
            "user_id": user_id,
            "customer_id": customer_id,
            "status": "promised",
            "promise_at": promise_at,
            "promise_amount": Decimal("5000"),
            "updated_at": self.clock.now(),
        }
        values.update(overrides)
        return self._insert(RECOVERY_CASES, values)

    def followup(self, customer_id, due_at, user_id="user-1", **overrides):
        values = {
            "id": f"fu-{uuid4().hex[:8]}",
            "user_id": user_id,
            "customer_id": customer_id,
            "channel": "whatsapp",
            "due_at": due_at,
            "status": "pending",
            "balance": Decimal("2500"),
            "created_at": self.clock.now(),
        }
        values.update(overrides)
        return self._insert(FOLLOWUP_TASKS, values)

    def device(self, user_id="user-1", push_token="tok-1", status="TRUSTED"):
        values = {"id": f"dev-{uuid4().hex[:8]}", "user_id": user_id, "status": status, "push_token": push_token}
        return self._insert(DEVICES, values)


@pytest.fixture
def seed(engine, clock):
    return Seeder(engine, clock)
