"""
Read-only access to the timecard audit trail.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from timecards.core.query_builder import (
    filter_by_date_range,
    filter_by_values,
    get_paginated_results,
)
from timecards.models.audit_entry import AuditActionType, TimecardAuditEntry

DEFAULT_LIMIT = 50
MAX_LIMIT = 500

# Label used for whole-record status entries, which are stored with field_name NULL
STATUS_FIELD = "status"

TRACKABLE_FIELDS: Dict[str, str] = {
    "check_in_time": "Check In Time",
    "break_start_time": "Break Start Time",
    "break_end_time": "Break End Time",
    "check_out_time": "Check Out Time",
    "pay_rate": "Pay Rate",
    "manually_edited": "Manually Edited",
    "no_break_affirmed": "No Break Taken",
    "admin_notes": "Admin Notes",
    "edit_comments": "Edit Comments",
    "rejection_reason": "Rejection Reason",
    "rejected_fields": "Rejected Fields",
    STATUS_FIELD: "Status",
}

# Rejection metadata, as opposed to the time fields an approver corrected
_REJECTION_METADATA = frozenset({"rejection_reason", "rejected_fields", "edit_comments", "admin_notes"})

_DURATION_FIELDS = frozenset({"break_duration_minutes"})
_TIME_FIELDS = frozenset({"check_in_time", "check_out_time", "break_start_time", "break_end_time"})


@dataclass
class AuditFilter:
    action_types: Optional[List[AuditActionType]] = None
    field_names: Optional[List[str]] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    def __post_init__(self):
        self.limit = max(1, min(self.limit, MAX_LIMIT))
        self.offset = max(0, self.offset)


@dataclass
class AuditGroup:
    change_group_id: UUID
    changed_by: UUID
    changed_at: datetime
    action_type: AuditActionType
    entries: List[TimecardAuditEntry] = field(default_factory=list)


@dataclass
class AuditPage:
    items: list
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class AuditStatistics:
    total_entries: int
    by_action_type: Dict[str, int]
    last_modified_at: Optional[datetime]
    last_modified_by: Optional[UUID]


def display_field_name(entry: TimecardAuditEntry) -> str:
    return entry.field_name if entry.field_name is not None else STATUS_FIELD


def field_label(field_name: Optional[str]) -> str:
    name = field_name or STATUS_FIELD
    return TRACKABLE_FIELDS.get(name, name.replace("_", " ").title())


def format_value(field_name: Optional[str], value: Optional[str]) -> str:
    """Human-readable rendering of a serialized audit value."""
    if value is None or value == "":
        return "(empty)"
    name = field_name or STATUS_FIELD
    if name in _DURATION_FIELDS:
        try:
            minutes = int(round(float(value)))
        except ValueError:
            return value
        hours, mins = divmod(minutes, 60)
        return f"{hours}h {mins}m" if hours else f"{mins}m"
    if name in _TIME_FIELDS:
        try:
            return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S UTC")
        except ValueError:
            return value
    if value in ("true", "false"):
        return "Yes" if value == "true" else "No"
    if name == STATUS_FIELD:
        return value.replace("_", " ").title()
    return value


def _filtered(record_id: UUID, audit_filter: AuditFilter):
    query = select(TimecardAuditEntry).where(TimecardAuditEntry.timecard_id == record_id)
    query = filter_by_values(query, TimecardAuditEntry.action_type, audit_filter.action_types)
    if audit_filter.field_names:
        names = [None if n == STATUS_FIELD else n for n in audit_filter.field_names]
        query = filter_by_values(query, TimecardAuditEntry.field_name, names)
    return filter_by_date_range(
        query, TimecardAuditEntry.changed_at, audit_filter.date_from, audit_filter.date_to
    )


async def query(
    db: AsyncSession,
    record_id: UUID,
    audit_filter: Optional[AuditFilter] = None,
) -> AuditPage:
    """Entries for one timecard, newest first."""
    audit_filter = audit_filter or AuditFilter()
    items, total = await get_paginated_results(
        db,
        _filtered(record_id, audit_filter),
        skip=audit_filter.offset,
        limit=audit_filter.limit,
        order_by=[
            TimecardAuditEntry.changed_at.desc(),
            TimecardAuditEntry.record_version.desc().nulls_last(),
            TimecardAuditEntry.change_group_id,
            TimecardAuditEntry.field_name,
        ],
    )
    return AuditPage(items=items, total=total, limit=audit_filter.limit, offset=audit_filter.offset)


def summarize_group(entries: Sequence[TimecardAuditEntry]) -> AuditGroup:
    """
    Collapse one change group into a single annotated group.

    Field entries carry the workflow classification; the status entry is
    always status_change. The group takes the field classification when it
    has field entries.
    """
    first = entries[0]
    field_types = [e.action_type for e in entries if e.action_type != AuditActionType.STATUS_CHANGE]
    action_type = AuditActionType(field_types[0]) if field_types else AuditActionType.STATUS_CHANGE
    ordered = sorted(entries, key=lambda e: (e.field_name is None, e.field_name or ""))
    return AuditGroup(
        change_group_id=first.change_group_id,
        changed_by=first.changed_by,
        changed_at=first.changed_at,
        action_type=action_type,
        entries=ordered,
    )


async def query_grouped(
    db: AsyncSession,
    record_id: UUID,
    audit_filter: Optional[AuditFilter] = None,
) -> AuditPage:
    """Same entries as query(), grouped by change group. Pagination counts groups."""
    audit_filter = audit_filter or AuditFilter()
    matching = _filtered(record_id, audit_filter).subquery()

    group_query = (
        select(
            matching.c.change_group_id,
            func.max(matching.c.changed_at).label("group_changed_at"),
            func.max(matching.c.record_version).label("group_version"),
        )
        .group_by(matching.c.change_group_id)
    )
    count_result = await db.execute(select(func.count()).select_from(group_query.subquery()))
    total = count_result.scalar() or 0

    page_result = await db.execute(
        group_query
        .order_by(
            func.max(matching.c.changed_at).desc(),
            func.max(matching.c.record_version).desc().nulls_last(),
            matching.c.change_group_id,
        )
        .offset(audit_filter.offset)
        .limit(audit_filter.limit)
    )
    group_ids = [row.change_group_id for row in page_result]
    if not group_ids:
        return AuditPage(items=[], total=total, limit=audit_filter.limit, offset=audit_filter.offset)

    entry_result = await db.execute(
        _filtered(record_id, audit_filter).where(TimecardAuditEntry.change_group_id.in_(group_ids))
    )
    by_group: Dict[UUID, List[TimecardAuditEntry]] = {}
    for entry in entry_result.scalars().all():
        by_group.setdefault(entry.change_group_id, []).append(entry)

    groups = [summarize_group(by_group[gid]) for gid in group_ids if gid in by_group]
    return AuditPage(items=groups, total=total, limit=audit_filter.limit, offset=audit_filter.offset)


async def audit_statistics(db: AsyncSession, record_id: UUID) -> AuditStatistics:
    result = await db.execute(
        select(TimecardAuditEntry.action_type, func.count())
        .where(TimecardAuditEntry.timecard_id == record_id)
        .group_by(TimecardAuditEntry.action_type)
    )
    by_action_type = {AuditActionType(action).value: count for action, count in result.all()}

    latest_result = await db.execute(
        select(TimecardAuditEntry.changed_at, TimecardAuditEntry.changed_by)
        .where(TimecardAuditEntry.timecard_id == record_id)
        .order_by(TimecardAuditEntry.changed_at.desc(), TimecardAuditEntry.record_version.desc().nulls_last())
        .limit(1)
    )
    latest = latest_result.first()

    return AuditStatistics(
        total_entries=sum(by_action_type.values()),
        by_action_type=by_action_type,
        last_modified_at=latest.changed_at if latest else None,
        last_modified_by=latest.changed_by if latest else None,
    )


async def rejected_fields(db: AsyncSession, record_id: UUID) -> List[str]:
    """Fields an approver corrected while returning or rejecting the timecard."""
    result = await db.execute(
        select(TimecardAuditEntry.field_name)
        .where(
            TimecardAuditEntry.timecard_id == record_id,
            TimecardAuditEntry.action_type == AuditActionType.REJECTION_EDIT,
            TimecardAuditEntry.field_name.is_not(None),
        )
        .distinct()
    )
    return sorted(name for name in result.scalars().all() if name not in _REJECTION_METADATA)


def describe_entry(entry: TimecardAuditEntry) -> Dict[str, Any]:
    """Display-ready view of one entry."""
    return {
        "field_name": display_field_name(entry),
        "field_label": field_label(entry.field_name),
        "old_display": format_value(entry.field_name, entry.old_value),
        "new_display": format_value(entry.field_name, entry.new_value),
    }
