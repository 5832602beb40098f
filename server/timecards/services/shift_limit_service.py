"""
Shift-duration ceiling: detection, forced stop and the periodic sweep.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timecards.core.database import utcnow
from timecards.models.timecard import DRAFT_STATUSES, Timecard
from timecards.services.policy import TimecardPolicy
from timecards.services.time_clock_service import DerivedPhase, phase_of

logger = logging.getLogger(__name__)

# Actor recorded on audit entries written by the engine itself
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")


def shift_exceeded(record: Timecard, policy: TimecardPolicy, now: datetime) -> bool:
    """True when an open shift has run past the ceiling."""
    if phase_of(record) not in (DerivedPhase.CHECKED_IN, DerivedPhase.ON_BREAK):
        return False
    return now - record.check_in_time > policy.max_shift


def forced_stop_time(record: Timecard, policy: TimecardPolicy) -> datetime:
    return record.check_in_time + policy.max_shift


def stop_shift(record: Timecard, policy: TimecardPolicy) -> None:
    """Close an over-limit shift at exactly check-in plus the ceiling.

    A break still running is closed at the same moment. A break that starts
    at or after that moment falls outside the shift and is dropped.
    """
    stop_at = forced_stop_time(record, policy)
    if record.break_start_time is not None and record.break_start_time >= stop_at:
        record.break_start_time = None
        record.break_end_time = None
    elif record.break_start_time is not None and (
        record.break_end_time is None or record.break_end_time > stop_at
    ):
        record.break_end_time = stop_at
    record.check_out_time = stop_at
    record.forced_stop = True


@dataclass
class SweepResult:
    checked: int = 0
    stopped: int = 0
    failed: int = 0


async def find_open_shifts(db: AsyncSession, policy: TimecardPolicy, now: datetime) -> List[UUID]:
    """Ids of records still checked in past the ceiling."""
    result = await db.execute(
        select(Timecard.id).where(
            Timecard.check_in_time.is_not(None),
            Timecard.check_out_time.is_(None),
            Timecard.check_in_time < now - policy.max_shift,
            Timecard.status.in_(list(DRAFT_STATUSES)),
        )
    )
    return list(result.scalars().all())


async def sweep_open_shifts(
    session_factory: Callable[[], AsyncSession],
    policy: TimecardPolicy,
    now: Optional[datetime] = None,
    notifier=None,
) -> SweepResult:
    """
    Force-stop every open shift past the ceiling.

    Each record is stopped in its own session and transaction through the
    regular mutation path, so a record stopped concurrently by a request (or
    by another sweep) is a no-op here. A failure on one record is logged and
    the sweep moves on.
    """
    from timecards.services.timecard_service import Action, SYSTEM_CONTEXT, apply

    now = now or utcnow()
    async with session_factory() as db:
        record_ids = await find_open_shifts(db, policy, now)

    sweep = SweepResult(checked=len(record_ids))
    for record_id in record_ids:
        try:
            async with session_factory() as db:
                result = await apply(
                    db,
                    record_id,
                    Action.FORCE_STOP,
                    {},
                    SYSTEM_CONTEXT,
                    policy,
                    now=now,
                    notifier=notifier,
                )
        except Exception:
            sweep.failed += 1
            logger.error(f"Shift sweep crashed on timecard {record_id}", exc_info=True)
            continue
        if not result.ok:
            sweep.failed += 1
            logger.error(f"Shift sweep could not stop timecard {record_id}: {result.error.code}")
        elif result.entries_written:
            sweep.stopped += 1

    logger.info(
        f"Shift sweep finished: {sweep.checked} over limit, {sweep.stopped} stopped, {sweep.failed} failed"
    )
    return sweep


async def run_shift_sweeper(
    session_factory: Callable[[], AsyncSession],
    policy: TimecardPolicy,
    interval_seconds: int,
    notifier=None,
) -> None:
    """Run the sweep forever, every ``interval_seconds``. Cancel the task to stop it."""
    logger.info(f"Shift sweeper started (every {interval_seconds}s)")
    while True:
        try:
            await sweep_open_shifts(session_factory, policy, notifier=notifier)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Shift sweep failed", exc_info=True)
        await asyncio.sleep(interval_seconds)
