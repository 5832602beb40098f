"""
Derives a worker's time-clock phase from the timestamps on a timecard.

There is no stored phase column: the four optional timestamps are the single
source of truth and the phase is recomputed on every read.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import enum

from timecards.models.timecard import Timecard, WorkerCategory
from timecards.services.break_policy_service import expected_break_end
from timecards.services.errors import InvalidTransition
from timecards.services.policy import TimecardPolicy


class DerivedPhase(str, enum.Enum):
    NOT_STARTED = "not_started"
    CHECKED_IN = "checked_in"
    ON_BREAK = "on_break"
    CHECKED_OUT = "checked_out"


class ClockAction(str, enum.Enum):
    CHECK_IN = "check_in"
    START_BREAK = "start_break"
    END_BREAK = "end_break"
    CHECK_OUT = "check_out"


# action -> (required phase, resulting phase)
TRANSITIONS: dict[ClockAction, tuple[DerivedPhase, DerivedPhase]] = {
    ClockAction.CHECK_IN: (DerivedPhase.NOT_STARTED, DerivedPhase.CHECKED_IN),
    ClockAction.START_BREAK: (DerivedPhase.CHECKED_IN, DerivedPhase.ON_BREAK),
    ClockAction.END_BREAK: (DerivedPhase.ON_BREAK, DerivedPhase.CHECKED_IN),
    ClockAction.CHECK_OUT: (DerivedPhase.CHECKED_IN, DerivedPhase.CHECKED_OUT),
}

# Timestamp each action stamps on the record
ACTION_FIELDS: dict[ClockAction, str] = {
    ClockAction.CHECK_IN: "check_in_time",
    ClockAction.START_BREAK: "break_start_time",
    ClockAction.END_BREAK: "break_end_time",
    ClockAction.CHECK_OUT: "check_out_time",
}


def derive_phase(
    check_in_time: Optional[datetime],
    check_out_time: Optional[datetime],
    break_start_time: Optional[datetime],
    break_end_time: Optional[datetime],
) -> DerivedPhase:
    """Return the phase implied by the four timestamps. Never fails."""
    if check_out_time is not None:
        return DerivedPhase.CHECKED_OUT
    if break_start_time is not None and break_end_time is None:
        return DerivedPhase.ON_BREAK
    if check_in_time is not None:
        return DerivedPhase.CHECKED_IN
    return DerivedPhase.NOT_STARTED


def phase_of(record: Timecard) -> DerivedPhase:
    return derive_phase(
        record.check_in_time,
        record.check_out_time,
        record.break_start_time,
        record.break_end_time,
    )


def check_clock_transition(
    action: ClockAction,
    record: Timecard,
) -> Optional[InvalidTransition]:
    """Return an InvalidTransition if ``action`` is illegal for the record's phase."""
    required, _ = TRANSITIONS[action]
    current = phase_of(record)
    if current != required:
        return InvalidTransition(action.value, current.value, f"requires phase '{required.value}'")
    if action == ClockAction.START_BREAK and record.break_start_time is not None:
        return InvalidTransition(action.value, current.value, "a break has already been recorded")
    return None


def next_action(record: Timecard) -> Optional[ClockAction]:
    """The action the worker should be offered next, or None when their part is done.

    Talent escorts hand check-out to their supervisor once the break is over.
    """
    phase = phase_of(record)
    if phase == DerivedPhase.NOT_STARTED:
        return ClockAction.CHECK_IN
    if phase == DerivedPhase.ON_BREAK:
        return ClockAction.END_BREAK
    if phase == DerivedPhase.CHECKED_IN:
        if record.break_end_time is None:
            return ClockAction.START_BREAK
        if WorkerCategory(record.worker_category) == WorkerCategory.TALENT_ESCORT:
            return None
        return ClockAction.CHECK_OUT
    return None


@dataclass(frozen=True)
class ClockStatus:
    phase: DerivedPhase
    next_action: Optional[ClockAction]
    shift_hours: float
    is_overtime: bool
    break_minimum_met: Optional[bool] = None
    break_ends_at: Optional[datetime] = None


def clock_status(record: Timecard, policy: TimecardPolicy, now: datetime) -> ClockStatus:
    """Phase plus the context a time-clock screen needs."""
    phase = phase_of(record)
    shift_hours = 0.0
    if record.check_in_time is not None:
        end = record.check_out_time or now
        shift_hours = max(0.0, (end - record.check_in_time).total_seconds() / 3600)
    is_overtime = phase != DerivedPhase.CHECKED_OUT and shift_hours >= policy.overtime_warning_hours

    break_minimum_met = None
    break_ends_at = None
    if phase == DerivedPhase.ON_BREAK:
        break_ends_at = expected_break_end(record.break_start_time, policy.break_minutes_for(record.worker_category))
        break_minimum_met = now >= break_ends_at

    return ClockStatus(
        phase=phase,
        next_action=next_action(record),
        shift_hours=round(shift_hours, 2),
        is_overtime=is_overtime,
        break_minimum_met=break_minimum_met,
        break_ends_at=break_ends_at,
    )
