from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import APPROVER, OWNER, PROJECT_ID, WORK_DATE, WORKER_ID, at, fetch_entries, fetch_record
from timecards.models.timecard import Timecard, TimecardStatus
from timecards.services import timecard_service
from timecards.services.errors import ConcurrentModification, InvalidTransition
from timecards.services.timecard_service import (
    Action,
    MutationResult,
    apply,
    check_in,
    with_concurrency_retry,
)

SHIFT = dict(
    check_in_time=at(9),
    break_start_time=at(12),
    break_end_time=at(13),
    check_out_time=at(17),
)
LATER_CHECK_OUT = {"updates": {"check_out_time": "2024-03-04T17:30:00Z"}}


@pytest.fixture
def race_once(session_factory, monkeypatch):
    """
    Let another writer commit between the locked read and the write, once.

    Stands in for a backend without row locks: the first load returns a
    record whose version is already out of date by the time it is flushed.
    """
    real_load = timecard_service._load_for_update
    state = {"raced": 0}

    async def load_then_race(db, record_id):
        record = await real_load(db, record_id)
        if not state["raced"]:
            state["raced"] += 1
            async with session_factory() as other:
                await other.execute(
                    update(Timecard)
                    .where(Timecard.id == record_id)
                    .values(version=Timecard.version + 1, admin_notes="touched elsewhere")
                )
                await other.commit()
        return record

    monkeypatch.setattr(timecard_service, "_load_for_update", load_then_race)
    return state


@pytest.mark.asyncio
async def test_expected_version_mismatch(db, session_factory, make_timecard, policy):
    record = await make_timecard(**SHIFT)

    result = await apply(db, record.id, Action.EDIT, LATER_CHECK_OUT, OWNER, policy, expected_version=2, now=at(18))

    assert isinstance(result.error, ConcurrentModification)
    assert (result.error.expected_version, result.error.actual_version) == (2, 1)
    assert (await fetch_record(session_factory, record.id)).check_out_time == at(17)
    assert await fetch_entries(session_factory, record.id) == []


@pytest.mark.asyncio
async def test_expected_version_match_bumps_version(db, session_factory, make_timecard, policy):
    record = await make_timecard(**SHIFT)

    result = await apply(db, record.id, Action.EDIT, LATER_CHECK_OUT, OWNER, policy, expected_version=1, now=at(18))

    assert result.ok, result.error
    assert (await fetch_record(session_factory, record.id)).version == 2


@pytest.mark.asyncio
async def test_stale_write_is_a_concurrent_modification(db, session_factory, make_timecard, policy, race_once):
    record = await make_timecard(**SHIFT)

    result = await apply(db, record.id, Action.EDIT, LATER_CHECK_OUT, OWNER, policy, now=at(18))

    assert isinstance(result.error, ConcurrentModification)
    stored = await fetch_record(session_factory, record.id)
    assert stored.check_out_time == at(17)
    assert stored.admin_notes == "touched elsewhere"
    assert await fetch_entries(session_factory, record.id) == []


@pytest.mark.asyncio
async def test_retry_applies_against_fresh_state(db, session_factory, make_timecard, policy, race_once):
    record = await make_timecard(**SHIFT)

    result = await with_concurrency_retry(
        lambda: apply(db, record.id, Action.EDIT, LATER_CHECK_OUT, OWNER, policy, now=at(18))
    )

    assert result.ok, result.error
    assert race_once["raced"] == 1
    stored = await fetch_record(session_factory, record.id)
    assert stored.check_out_time == at(17, 30)
    assert stored.admin_notes == "touched elsewhere"
    assert stored.version == 3
    entries = await fetch_entries(session_factory, record.id)
    assert [e.field_name for e in entries] == ["check_out_time"]


@pytest.mark.asyncio
async def test_retry_gives_up_after_attempts():
    calls = []

    async def always_conflicts() -> MutationResult:
        calls.append(1)
        return MutationResult(error=ConcurrentModification("tc-1"))

    result = await with_concurrency_retry(always_conflicts, attempts=3)

    assert isinstance(result.error, ConcurrentModification)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_does_not_repeat_other_errors():
    calls = []

    async def invalid() -> MutationResult:
        calls.append(1)
        return MutationResult(error=InvalidTransition("submit", "submitted"))

    await with_concurrency_retry(invalid)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_check_in_creates_record(db, session_factory, policy):
    result = await check_in(
        db, WORKER_ID, PROJECT_ID, WORK_DATE, OWNER, policy, pay_rate=Decimal("18.50"), now=at(8, 58),
    )

    assert result.ok, result.error
    stored = await fetch_record(session_factory, result.record.id)
    assert stored.check_in_time == at(8, 58)
    assert stored.status == TimecardStatus.DRAFT
    assert stored.version == 1
    entries = await fetch_entries(session_factory, stored.id)
    assert [(e.field_name, e.old_value) for e in entries] == [("check_in_time", None)]


@pytest.mark.asyncio
async def test_second_check_in_same_day_is_invalid(db, policy):
    first = await check_in(db, WORKER_ID, PROJECT_ID, WORK_DATE, OWNER, policy, now=at(9))
    assert first.ok, first.error

    second = await check_in(db, WORKER_ID, PROJECT_ID, WORK_DATE, OWNER, policy, now=at(9, 5))

    assert isinstance(second.error, InvalidTransition)
    assert second.error.current == "checked_in"


@pytest.mark.asyncio
async def test_racing_first_check_in_loses_cleanly(db, session_factory, make_timecard, policy, monkeypatch):
    """Two first check-ins for the same day: the loser hits the unique key."""
    winner = await make_timecard(check_in_time=at(9))

    async def nothing_found(*args, **kwargs):
        return None

    monkeypatch.setattr(timecard_service, "find_timecard", nothing_found)

    result = await check_in(db, WORKER_ID, PROJECT_ID, WORK_DATE, APPROVER, policy, now=at(9, 1))

    assert isinstance(result.error, ConcurrentModification)
    stored = await fetch_record(session_factory, winner.id)
    assert stored.check_in_time == at(9)
