"""Configuration passed explicitly into every engine call."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from timecards.models.timecard import WorkerCategory

if TYPE_CHECKING:
    from timecards.core.config import Settings


@dataclass(frozen=True)
class TimecardPolicy:
    """Break, shift and pay rules supplied by the settings collaborator."""

    default_escort_break_minutes: int = 30
    default_staff_break_minutes: int = 60
    break_grace_minutes: int = 5
    max_hours_before_stop: float = 20
    overtime_warning_hours: float = 12
    missing_break_threshold_hours: float = 6
    regular_hours_per_day: float = 8
    overtime_multiplier: Decimal = Decimal("1.5")

    @classmethod
    def from_settings(cls, settings: Settings) -> TimecardPolicy:
        return cls(
            default_escort_break_minutes=settings.DEFAULT_ESCORT_BREAK_MINUTES,
            default_staff_break_minutes=settings.DEFAULT_STAFF_BREAK_MINUTES,
            break_grace_minutes=settings.BREAK_GRACE_MINUTES,
            max_hours_before_stop=settings.MAX_HOURS_BEFORE_STOP,
            overtime_warning_hours=settings.OVERTIME_WARNING_HOURS,
            missing_break_threshold_hours=settings.MISSING_BREAK_THRESHOLD_HOURS,
            regular_hours_per_day=settings.REGULAR_HOURS_PER_DAY,
            overtime_multiplier=Decimal(str(settings.OVERTIME_MULTIPLIER)),
        )

    def break_minutes_for(self, category: WorkerCategory | str) -> int:
        """Default break length for a worker category."""
        if WorkerCategory(category) == WorkerCategory.TALENT_ESCORT:
            return self.default_escort_break_minutes
        return self.default_staff_break_minutes

    @property
    def max_shift(self) -> timedelta:
        return timedelta(hours=self.max_hours_before_stop)
