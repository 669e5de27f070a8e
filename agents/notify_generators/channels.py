from __future__ import annotations

from datetime import timedelta

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.business import BusinessSettings
from backend.core.clock import Clock, default_clock
from backend.core.config import settings
from backend.core.notifications.store import Channel
from backend.core.observability.logging import get_logger
from backend.core.schema import DEVICES

logger = get_logger(__name__)

TRUSTED = "TRUSTED"


def has_trusted_push_device(engine: Engine, user_id: str) -> bool:
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(DEVICES.c.id)
            .where(DEVICES.c.user_id == user_id)
            .where(DEVICES.c.status == TRUSTED)
            .where(DEVICES.c.push_token.is_not(None))
            .where(DEVICES.c.push_token != "")
            .limit(1)
        ).first()
    return row is not None


class ChannelSelector:
    """Channel selection for one generator pass.

    Owned by a single run; entries expire after ``ttl_s`` so long passes
    still notice newly registered devices.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock | None = None,
        ttl_s: int | None = None,
        push_configured: bool | None = None,
    ) -> None:
        self.engine = engine
        self.clock = clock or default_clock
        self.ttl = timedelta(seconds=settings.CHANNEL_CACHE_TTL_S if ttl_s is None else ttl_s)
        self.push_configured = bool(settings.PUSH_GATEWAY_URL) if push_configured is None else push_configured
        self._cache: dict[str, tuple] = {}

    def select(self, business: BusinessSettings) -> list[Channel]:
        now = self.clock.now()
        hit = self._cache.get(business.user_id)
        if hit is not None and hit[0] > now:
            return list(hit[1])

        channels = [Channel.IN_APP]
        if self.push_configured and business.channel_enabled("push"):
            try:
                if has_trusted_push_device(self.engine, business.user_id):
                    channels.append(Channel.PUSH)
            except SQLAlchemyError as e:
                logger.warning(
                    "channel_selection_degraded",
                    extra={"user_id": business.user_id, "error": str(e)},
                )

        self._cache[business.user_id] = (now + self.ttl, tuple(channels))
        return channels
