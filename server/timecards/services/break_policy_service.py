"""
Service for applying the break policy when a worker ends a break.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class BreakResolution:
    """What to persist when a break ends."""

    break_end_time: datetime
    manually_edited: bool
    actual_minutes: float
    recorded_minutes: float


def expected_break_end(break_start: datetime, default_minutes: int) -> datetime:
    """Moment the configured break duration has elapsed."""
    return break_start + timedelta(minutes=default_minutes)


def resolve_break_end(
    break_start: datetime,
    ended_at: datetime,
    default_minutes: int,
    grace_minutes: int = 5,
) -> BreakResolution:
    """
    Decide the break-end timestamp to persist.

    Args:
        break_start: When the break started
        ended_at: When the worker asked to end the break
        default_minutes: Configured break duration for the worker's category
        grace_minutes: Window after the configured duration that is absorbed

    Returns:
        BreakResolution. Ending inside the grace window records exactly the
        configured duration and is not flagged. Ending early, or after the
        grace window, records the actual time and flags the record.
    """
    policy_end = expected_break_end(break_start, default_minutes)
    actual_minutes = (ended_at - break_start).total_seconds() / 60

    if policy_end <= ended_at <= policy_end + timedelta(minutes=grace_minutes):
        return BreakResolution(
            break_end_time=policy_end,
            manually_edited=False,
            actual_minutes=actual_minutes,
            recorded_minutes=float(default_minutes),
        )

    # Early end or overrun: keep the clock time and flag it for review
    return BreakResolution(
        break_end_time=ended_at,
        manually_edited=True,
        actual_minutes=actual_minutes,
        recorded_minutes=actual_minutes,
    )
