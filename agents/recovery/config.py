"""Escalation ladder configuration.

Provides the per-business escalation thresholds with a settings-wide default
and environment-based overrides.
"""

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from backend.core.config import settings


def _default_days() -> tuple[int, int, int]:
    days = [int(x.strip()) for x in settings.ESCALATION_LADDER_DAYS.split(",") if x.strip()]
    return days[0], days[1], days[2]


@dataclass(frozen=True)
class EscalationLadder:
    """Days overdue at which a broken promise reaches each escalation level.

    Supports business-specific overrides, in increasing precedence:
    the ``escalation_ladder`` column of ``business_settings`` and environment
    variables ``RECOVERY_<BUSINESS_ID>_LEVEL_<N>_DAYS``.
    """

    level_1_days: int = 1
    level_2_days: int = 3
    level_3_days: int = 7

    def __post_init__(self) -> None:
        if not 0 < self.level_1_days < self.level_2_days < self.level_3_days:
            raise ValueError(
                "escalation ladder must be strictly increasing and positive: "
                f"{self.level_1_days}/{self.level_2_days}/{self.level_3_days}"
            )

    @classmethod
    def default(cls) -> "EscalationLadder":
        l1, l2, l3 = _default_days()
        return cls(level_1_days=l1, level_2_days=l2, level_3_days=l3)

    @classmethod
    def from_business(
        cls, business_id: Optional[str], overrides: Optional[Mapping[str, Any]] = None
    ) -> "EscalationLadder":
        """Create the ladder for a business.

        Args:
            business_id: Business identifier used for environment overrides
            overrides: Stored ``escalation_ladder`` settings, if any

        Returns:
            Ladder with business-specific overrides applied
        """
        base = cls.default()
        values = {
            "level_1_days": base.level_1_days,
            "level_2_days": base.level_2_days,
            "level_3_days": base.level_3_days,
        }
        for key in values:
            if overrides and overrides.get(key) is not None:
                values[key] = int(overrides[key])

        if business_id:
            prefix = f"RECOVERY_{business_id.upper().replace('-', '_')}"
            for level in (1, 2, 3):
                env = os.getenv(f"{prefix}_LEVEL_{level}_DAYS")
                if env:
                    values[f"level_{level}_days"] = int(env)

        return cls(**values)

    def target_level(self, days_overdue: int) -> int:
        """Escalation level a promise ``days_overdue`` days late should be at."""
        if days_overdue >= self.level_3_days:
            return 3
        if days_overdue >= self.level_2_days:
            return 2
        if days_overdue >= self.level_1_days:
            return 1
        return 0
