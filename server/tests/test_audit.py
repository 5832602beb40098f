import uuid
from decimal import Decimal

import pytest
from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError

from conftest import APPROVER, APPROVER_ID, OWNER, at, fetch_entries, fetch_record
from timecards.core.immutability import (
    ImmutabilityViolationError,
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from timecards.models.audit_entry import AuditActionType, TimecardAuditEntry
from timecards.models.timecard import TimecardStatus
from timecards.services import audit_service
from timecards.services.audit_service import ChangeGroup, record_changes, record_status_change
from timecards.services.change_detection_service import FieldChange
from timecards.services.errors import AuditPersistenceFailure
from timecards.services.timecard_service import Action, apply

SHIFT = dict(
    check_in_time=at(9),
    break_start_time=at(12),
    break_end_time=at(13),
    check_out_time=at(17),
)


async def audited_record(db, make_timecard, policy):
    """A record with one audited change, so there is an entry to tamper with."""
    record = await make_timecard(**SHIFT)
    result = await apply(
        db, record.id, Action.EDIT, {"updates": {"check_out_time": "2024-03-04T17:30:00Z"}}, OWNER, policy,
        now=at(18),
    )
    assert result.ok, result.error
    return record


@pytest.fixture
def broken_audit(monkeypatch):
    """Make every audit insert violate NOT NULL on changed_by."""
    original_build = audit_service.build_entry

    def broken_build(*args, **kwargs):
        entry = original_build(*args, **kwargs)
        entry.changed_by = None
        return entry

    monkeypatch.setattr(audit_service, "build_entry", broken_build)


def test_change_group_truncates_to_the_second():
    group = ChangeGroup.start(APPROVER_ID, at(10).replace(microsecond=123456))
    assert group.changed_at == at(10)
    assert group.changed_by == APPROVER_ID
    assert group.entries == []


@pytest.mark.asyncio
async def test_multi_field_edit_writes_one_group(db, session_factory, make_timecard, policy):
    record = await make_timecard(**SHIFT)

    result = await apply(
        db,
        record.id,
        Action.EDIT,
        {
            "updates": {
                "check_in_time": "2024-03-04T08:45:00Z",
                "break_end_time": "2024-03-04T12:45:00Z",
                "check_out_time": "2024-03-04T17:15:00Z",
            },
            "edit_comment": "Badge reader was down",
        },
        OWNER,
        policy,
        now=at(18, 0, 30),
    )

    assert result.ok, result.error
    entries = await fetch_entries(session_factory, record.id)
    assert result.entries_written == len(entries) == 4
    assert {e.change_group_id for e in entries} == {result.change_group_id}
    assert {e.changed_at for e in entries} == {at(18, 0, 30)}
    assert {e.changed_by for e in entries} == {OWNER.actor_id}
    assert {e.action_type for e in entries} == {AuditActionType.USER_EDIT}
    assert {e.work_date for e in entries} == {record.work_date}
    assert {e.field_name for e in entries} == {
        "check_in_time", "break_end_time", "check_out_time", "edit_comments",
    }


@pytest.mark.asyncio
async def test_derived_totals_are_not_audited(db, session_factory, make_timecard, policy):
    record = await make_timecard(**SHIFT)
    await apply(
        db, record.id, Action.EDIT, {"updates": {"check_out_time": "2024-03-04T18:00:00Z"}}, OWNER, policy,
        now=at(18, 5),
    )

    stored = await fetch_record(session_factory, record.id)
    assert stored.total_hours == Decimal("8.00")
    fields = [e.field_name for e in await fetch_entries(session_factory, record.id)]
    assert fields == ["check_out_time"]


@pytest.mark.asyncio
async def test_edit_and_return_writes_correction_and_status(db, session_factory, make_timecard, policy):
    """One corrected field plus the status change: exactly two entries in one group."""
    record = await make_timecard(status=TimecardStatus.SUBMITTED, submitted_at=at(17, 5), **SHIFT)

    result = await apply(
        db,
        record.id,
        Action.EDIT_AND_RETURN,
        {"updates": {"check_out_time": "2024-03-04T16:30:00Z"}},
        APPROVER,
        policy,
        now=at(18),
    )

    assert result.ok, result.error
    entries = await fetch_entries(session_factory, record.id)
    assert len(entries) == 2
    assert {e.change_group_id for e in entries} == {result.change_group_id}

    field_entry, status_entry = sorted(entries, key=lambda e: e.field_name is None)
    assert field_entry.field_name == "check_out_time"
    assert field_entry.old_value == "2024-03-04T17:00:00+00:00"
    assert field_entry.new_value == "2024-03-04T16:30:00+00:00"
    assert field_entry.action_type == AuditActionType.REJECTION_EDIT
    assert status_entry.field_name is None
    assert (status_entry.old_value, status_entry.new_value) == ("submitted", "draft")
    assert status_entry.action_type == AuditActionType.STATUS_CHANGE

    stored = await fetch_record(session_factory, record.id)
    assert stored.status == TimecardStatus.DRAFT
    assert stored.submitted_at is None


@pytest.mark.asyncio
async def test_record_changes_with_nothing_to_write(db):
    group = await record_changes(db, uuid.uuid4(), [], APPROVER_ID, AuditActionType.ADMIN_EDIT)
    assert group.entries == []
    result = await db.execute(select(TimecardAuditEntry))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_entries_share_an_explicit_group(db, session_factory, make_timecard):
    record = await make_timecard(**SHIFT)
    group = ChangeGroup.start(APPROVER_ID, at(19))

    await record_changes(
        db,
        record.id,
        [FieldChange("admin_notes", None, "checked with site lead")],
        APPROVER_ID,
        AuditActionType.ADMIN_EDIT,
        record.work_date,
        group=group,
    )
    await record_status_change(
        db, record.id, TimecardStatus.DRAFT, TimecardStatus.EDITED_DRAFT, APPROVER_ID, record.work_date,
        group=group,
    )
    await db.commit()

    entries = await fetch_entries(session_factory, record.id)
    assert len(group.entries) == len(entries) == 2
    assert {e.change_group_id for e in entries} == {group.id}
    assert {e.work_date for e in entries} == {record.work_date}


@pytest.mark.asyncio
async def test_audit_failure_rolls_back_the_mutation(db, session_factory, make_timecard, policy, broken_audit):
    record = await make_timecard(**SHIFT)
    result = await apply(
        db, record.id, Action.EDIT, {"updates": {"check_out_time": "2024-03-04T17:30:00Z"}}, APPROVER, policy,
        now=at(18),
    )

    assert isinstance(result.error, AuditPersistenceFailure)
    assert result.error.record_id == record.id
    stored = await fetch_record(session_factory, record.id)
    assert stored.check_out_time == at(17)
    assert stored.status == TimecardStatus.DRAFT
    assert stored.version == record.version
    assert await fetch_entries(session_factory, record.id) == []


@pytest.mark.asyncio
async def test_notifications_not_sent_when_audit_fails(db, make_timecard, policy, notifier, broken_audit):
    record = await make_timecard(status=TimecardStatus.SUBMITTED, **SHIFT)
    result = await apply(db, record.id, Action.APPROVE, {}, APPROVER, policy, now=at(18), notifier=notifier)

    assert isinstance(result.error, AuditPersistenceFailure)
    assert notifier.events == []


class TestImmutability:
    @pytest.mark.asyncio
    async def test_orm_update_is_rejected(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)

        async with session_factory() as session:
            entry = (await session.execute(select(TimecardAuditEntry))).scalars().first()
            entry.new_value = "2024-03-04T23:00:00+00:00"
            with pytest.raises(ImmutabilityViolationError):
                await session.flush()
            await session.rollback()

        entries = await fetch_entries(session_factory, record.id)
        assert entries[0].new_value == "2024-03-04T17:30:00+00:00"

    @pytest.mark.asyncio
    async def test_orm_delete_is_rejected(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)

        async with session_factory() as session:
            entry = (await session.execute(select(TimecardAuditEntry))).scalars().first()
            await session.delete(entry)
            with pytest.raises(ImmutabilityViolationError):
                await session.flush()
            await session.rollback()

        assert len(await fetch_entries(session_factory, record.id)) == 1

    @pytest.mark.asyncio
    async def test_bulk_statements_are_rejected(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)

        async with session_factory() as session:
            with pytest.raises(ImmutabilityViolationError):
                await session.execute(update(TimecardAuditEntry).values(new_value=None))
            with pytest.raises(ImmutabilityViolationError):
                await session.execute(delete(TimecardAuditEntry))
            await session.rollback()

        assert len(await fetch_entries(session_factory, record.id)) == 1

    @pytest.mark.asyncio
    async def test_raw_sql_is_rejected_by_trigger(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)

        async with session_factory() as session:
            with pytest.raises(DBAPIError):
                await session.execute(text("UPDATE timecard_audit_log SET new_value = 'tampered'"))
            await session.rollback()
            with pytest.raises(DBAPIError):
                await session.execute(text("DELETE FROM timecard_audit_log"))
            await session.rollback()

        entries = await fetch_entries(session_factory, record.id)
        assert [e.new_value for e in entries] == ["2024-03-04T17:30:00+00:00"]

    @pytest.mark.asyncio
    async def test_trigger_holds_without_orm_guards(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)

        unregister_immutability_listeners()
        try:
            async with session_factory() as session:
                entry = (await session.execute(select(TimecardAuditEntry))).scalars().first()
                entry.new_value = "tampered"
                with pytest.raises(DBAPIError):
                    await session.flush()
                await session.rollback()
        finally:
            register_immutability_listeners()

        entries = await fetch_entries(session_factory, record.id)
        assert entries[0].new_value == "2024-03-04T17:30:00+00:00"

    @pytest.mark.asyncio
    async def test_inserts_remain_allowed(self, db, session_factory, make_timecard, policy):
        record = await audited_record(db, make_timecard, policy)
        second = await apply(
            db, record.id, Action.EDIT, {"updates": {"check_out_time": "2024-03-04T17:45:00Z"}}, OWNER, policy,
            now=at(18, 1),
        )
        assert second.ok, second.error
        assert len(await fetch_entries(session_factory, record.id)) == 2
