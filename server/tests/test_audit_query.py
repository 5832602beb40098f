from datetime import timedelta
import uuid

import pytest

from conftest import APPROVER, APPROVER_ID, OWNER, WORK_DATE, at
from timecards.models.audit_entry import AuditActionType, TimecardAuditEntry
from timecards.services import audit_query_service
from timecards.services.audit_query_service import (
    MAX_LIMIT,
    AuditFilter,
    describe_entry,
    field_label,
    format_value,
)
from timecards.services.timecard_service import Action, apply


@pytest.fixture
async def trail(db, make_timecard, policy):
    """
    A timecard with five change groups:

    18:00  owner edits check-out              user_edit       1 entry
    18:01  owner submits                      status_change   1 entry
    18:02  approver corrects and returns      rejection_edit  3 entries
    18:03  owner submits again                status_change   1 entry
    18:04  approver rejects                   rejection_edit  3 entries
    """
    record = await make_timecard(
        check_in_time=at(9),
        break_start_time=at(12),
        break_end_time=at(13),
        check_out_time=at(17),
    )
    steps = [
        (Action.EDIT, {"updates": {"check_out_time": "2024-03-04T17:30:00Z"}}, OWNER, at(18)),
        (Action.SUBMIT, {}, OWNER, at(18, 1)),
        (
            Action.EDIT_AND_RETURN,
            {"updates": {"check_out_time": "2024-03-04T17:15:00Z"}, "edit_comment": "Gate log says 17:15"},
            APPROVER,
            at(18, 2),
        ),
        (Action.SUBMIT, {}, OWNER, at(18, 3)),
        (Action.REJECT, {"reason": "Break too long", "rejected_fields": ["break_end_time"]}, APPROVER, at(18, 4)),
    ]
    for action, payload, context, now in steps:
        result = await apply(db, record.id, action, payload, context, policy, now=now)
        assert result.ok, (action, result.error)
    return record.id


@pytest.mark.asyncio
async def test_query_returns_newest_first(db, trail):
    page = await audit_query_service.query(db, trail)

    assert page.total == 9
    assert len(page.items) == 9
    assert page.has_more is False
    changed = [e.changed_at for e in page.items]
    assert changed == sorted(changed, reverse=True)
    assert changed[0] == at(18, 4)


@pytest.mark.asyncio
async def test_query_paginates(db, trail):
    first = await audit_query_service.query(db, trail, AuditFilter(limit=4))
    last = await audit_query_service.query(db, trail, AuditFilter(limit=4, offset=8))

    assert len(first.items) == 4
    assert first.has_more is True
    assert len(last.items) == 1
    assert last.has_more is False
    assert last.items[0].changed_at == at(18)


def test_filter_clamps_limit_and_offset():
    assert AuditFilter(limit=10_000).limit == MAX_LIMIT
    assert AuditFilter(limit=0).limit == 1
    assert AuditFilter(offset=-3).offset == 0


@pytest.mark.asyncio
async def test_filter_by_action_type(db, trail):
    page = await audit_query_service.query(
        db, trail, AuditFilter(action_types=[AuditActionType.REJECTION_EDIT])
    )
    assert page.total == 4
    assert {e.field_name for e in page.items} == {
        "check_out_time", "edit_comments", "rejection_reason", "rejected_fields",
    }


@pytest.mark.asyncio
async def test_status_field_name_matches_status_entries(db, trail):
    status_only = await audit_query_service.query(db, trail, AuditFilter(field_names=["status"]))
    assert status_only.total == 4
    assert all(e.field_name is None for e in status_only.items)

    mixed = await audit_query_service.query(db, trail, AuditFilter(field_names=["status", "check_out_time"]))
    assert mixed.total == 6


@pytest.mark.asyncio
async def test_filter_by_date_range(db, trail):
    same_day = await audit_query_service.query(db, trail, AuditFilter(date_from=WORK_DATE, date_to=WORK_DATE))
    next_day = await audit_query_service.query(db, trail, AuditFilter(date_from=WORK_DATE + timedelta(days=1)))
    day_before = await audit_query_service.query(db, trail, AuditFilter(date_to=WORK_DATE - timedelta(days=1)))

    assert same_day.total == 9
    assert next_day.total == 0
    assert day_before.total == 0


@pytest.mark.asyncio
async def test_grouped_query_counts_groups(db, trail):
    page = await audit_query_service.query_grouped(db, trail)

    assert page.total == 5
    assert [g.changed_at for g in page.items] == [at(18, 4), at(18, 3), at(18, 2), at(18, 1), at(18)]
    assert [g.action_type for g in page.items] == [
        AuditActionType.REJECTION_EDIT,
        AuditActionType.STATUS_CHANGE,
        AuditActionType.REJECTION_EDIT,
        AuditActionType.STATUS_CHANGE,
        AuditActionType.USER_EDIT,
    ]


@pytest.mark.asyncio
async def test_grouped_query_lists_status_entry_last(db, trail):
    page = await audit_query_service.query_grouped(db, trail, AuditFilter(limit=1))

    rejection = page.items[0]
    assert page.has_more is True
    assert rejection.changed_by == APPROVER_ID
    assert [e.field_name for e in rejection.entries] == ["rejected_fields", "rejection_reason", None]


@pytest.mark.asyncio
async def test_grouped_query_applies_filters(db, trail):
    page = await audit_query_service.query_grouped(db, trail, AuditFilter(field_names=["status"]))
    assert page.total == 4
    assert all(len(g.entries) == 1 for g in page.items)
    assert {g.action_type for g in page.items} == {AuditActionType.STATUS_CHANGE}


@pytest.mark.asyncio
async def test_grouped_query_for_unknown_record(db):
    page = await audit_query_service.query_grouped(db, uuid.uuid4())
    assert page.total == 0
    assert page.items == []


@pytest.mark.asyncio
async def test_groups_in_the_same_second_keep_commit_order(db, make_timecard, policy):
    """A forced stop and the action that triggered it share a timestamp; the action is newer."""
    record = await make_timecard(check_in_time=at(1))
    result = await apply(
        db, record.id, Action.EDIT, {"updates": {"check_out_time": "2024-03-04T20:00:00Z"}}, APPROVER, policy,
        now=at(23),
    )
    assert result.ok, result.error
    assert result.forced_stop is True

    grouped = await audit_query_service.query_grouped(db, record.id)
    assert [g.changed_at for g in grouped.items] == [at(23), at(23)]
    assert grouped.items[0].change_group_id == result.change_group_id
    assert [e.field_name for e in grouped.items[1].entries] == ["check_out_time"]

    flat = await audit_query_service.query(db, record.id)
    assert [e.change_group_id for e in flat.items[:2]] == [result.change_group_id] * 2
    assert flat.items[-1].new_value == "2024-03-04T21:00:00+00:00"

    stats = await audit_query_service.audit_statistics(db, record.id)
    assert stats.last_modified_by == APPROVER_ID


@pytest.mark.asyncio
async def test_statistics(db, trail):
    stats = await audit_query_service.audit_statistics(db, trail)

    assert stats.total_entries == 9
    assert stats.by_action_type == {"user_edit": 1, "status_change": 4, "rejection_edit": 4}
    assert stats.last_modified_at == at(18, 4)
    assert stats.last_modified_by == APPROVER_ID


@pytest.mark.asyncio
async def test_statistics_without_history(db):
    stats = await audit_query_service.audit_statistics(db, uuid.uuid4())
    assert stats.total_entries == 0
    assert stats.last_modified_at is None


@pytest.mark.asyncio
async def test_rejected_fields_lists_corrected_fields_only(db, trail):
    assert await audit_query_service.rejected_fields(db, trail) == ["check_out_time"]


class TestFormatting:
    def test_empty_values(self):
        assert format_value("admin_notes", None) == "(empty)"
        assert format_value("admin_notes", "") == "(empty)"

    def test_timestamps(self):
        assert format_value("check_in_time", "2024-03-04T09:00:00+00:00") == "2024-03-04 09:00:00 UTC"

    def test_break_duration(self):
        assert format_value("break_duration_minutes", "90") == "1h 30m"
        assert format_value("break_duration_minutes", "30.00") == "30m"

    def test_booleans(self):
        assert format_value("manually_edited", "true") == "Yes"
        assert format_value("no_break_affirmed", "false") == "No"

    def test_status(self):
        assert format_value(None, "edited_draft") == "Edited Draft"

    def test_labels(self):
        assert field_label(None) == "Status"
        assert field_label("check_out_time") == "Check Out Time"
        assert field_label("overtime_rate") == "Overtime Rate"

    def test_describe_status_entry(self):
        entry = TimecardAuditEntry(field_name=None, old_value="submitted", new_value="rejected")
        assert describe_entry(entry) == {
            "field_name": "status",
            "field_label": "Status",
            "old_display": "Submitted",
            "new_display": "Rejected",
        }
