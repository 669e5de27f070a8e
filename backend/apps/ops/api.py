import time
from typing import Any

from fastapi import APIRouter, Header, HTTPException, status
from sqlalchemy import func, select

from backend.core.config import settings
from backend.core.cron_lock import list_lock_status
from backend.core.db import get_engine
from backend.core.notifications.store import AttemptStatus
from backend.core.observability.logging import hash_actor_token, logger
from backend.core.observability.metrics import get_metrics, record_histogram
from backend.core.schema import NOTIFICATION_ATTEMPTS

router = APIRouter(prefix="/ops")


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_admin(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    allowed = [t.strip() for t in settings.ADMIN_TOKENS.split(",") if t.strip()]
    if not allowed or token not in allowed:
        _error(status.HTTP_403_FORBIDDEN, "forbidden", "Admin token required")
    return hash_actor_token(token)


def _audit(event: str, token_hash: str, start: float, **fields: Any) -> None:
    duration_ms = (time.time() - start) * 1000.0
    record_histogram("ops_request_duration_ms", duration_ms, {"endpoint": event})
    logger.info(
        event,
        extra={"actor_role": "admin", "actor_token_hash": token_hash, "duration_ms": duration_ms, **fields},
    )


@router.get("/jobs", response_model=dict[str, Any])
def get_jobs(authorization: str | None = Header(None, alias="Authorization")):
    start = time.time()
    token_hash = _auth_admin(authorization)
    jobs = list_lock_status(get_engine())
    _audit("ops_jobs_status", token_hash, start, jobs=len(jobs))
    return {"jobs": jobs}


@router.get("/attempts", response_model=dict[str, Any])
def get_attempt_counts(authorization: str | None = Header(None, alias="Authorization")):
    start = time.time()
    token_hash = _auth_admin(authorization)
    a = NOTIFICATION_ATTEMPTS.c
    with get_engine().connect() as conn:
        rows = conn.execute(
            select(a.channel, a.status, func.count().label("cnt")).group_by(a.channel, a.status)
        ).fetchall()
    counts: dict[str, dict[str, int]] = {}
    for r in rows:
        counts.setdefault(r.channel, {})[r.status] = int(r.cnt)
    _audit("ops_attempt_counts", token_hash, start)
    return {"attempts": counts}


@router.get("/dead", response_model=dict[str, Any])
def list_dead_attempts(
    authorization: str | None = Header(None, alias="Authorization"),
    limit: int = 50,
):
    start = time.time()
    token_hash = _auth_admin(authorization)
    limit = max(1, min(limit, 500))
    a = NOTIFICATION_ATTEMPTS.c
    with get_engine().connect() as conn:
        rows = conn.execute(
            select(a.id, a.notification_id, a.user_id, a.channel, a.attempt_no, a.last_error, a.updated_at)
            .where(a.status == AttemptStatus.DEAD.value)
            .order_by(a.updated_at.desc())
            .limit(limit)
        ).mappings().all()
    items = [{**dict(r), "updated_at": r["updated_at"].isoformat() if r["updated_at"] else None} for r in rows]
    _audit("ops_dead_list", token_hash, start, count=len(items))
    return {"items": items}


@router.get("/metrics", response_model=dict[str, Any])
def get_metrics_snapshot(authorization: str | None = Header(None, alias="Authorization")):
    _auth_admin(authorization)
    return get_metrics()
