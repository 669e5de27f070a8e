"""Engine factory and column types shared by the engine tables."""

from __future__ import annotations

from datetime import UTC, datetime
from functools import lru_cache

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine

from backend.core.config import settings

# JSON column that maps to JSONB on Postgres
JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class UTCDateTime(sa.types.TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    Backends without native tz support (SQLite) hand back naive values; they
    are re-tagged as UTC so comparisons with aware ``now`` values stay valid.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def create_db_engine(url: str | None = None) -> Engine:
    url = url or settings.database_url
    kwargs: dict = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_pre_ping"] = True
    return sa.create_engine(url, **kwargs)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the process-wide engine."""
    return create_db_engine()


__all__ = ["EPOCH", "JSONType", "UTCDateTime", "create_db_engine", "get_engine"]
