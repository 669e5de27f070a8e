"""Health and readiness endpoints."""

from importlib.metadata import PackageNotFoundError, version
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.db import get_engine

from .logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_version() -> str:
    """Installed distribution version, or "dev" when running from a checkout."""
    try:
        return version("ledger-recovery-engine")
    except PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with light query."""
    try:
        with get_engine().connect() as conn:
            value = conn.execute(text("SELECT 1")).scalar()
        return "OK" if value == 1 else "FAIL"
    except SQLAlchemyError as e:
        logger.warning("health_db_check_failed", extra={"error": type(e).__name__})
        return "FAIL"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()
    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
