"""
Append-only persistence of timecard audit entries.

Only inserts live here. There is no function that updates or
deletes a TimecardAuditEntry; see timecards.core.immutability for the
storage-level guards.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Sequence
from uuid import UUID
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timecards.core.database import utcnow
from timecards.models.audit_entry import AuditActionType, TimecardAuditEntry
from timecards.models.timecard import TimecardStatus
from timecards.services.change_detection_service import FieldChange
from timecards.services.errors import AuditPersistenceFailure

logger = logging.getLogger(__name__)


@dataclass
class ChangeGroup:
    """Identity shared by every entry written for one mutation."""

    changed_by: UUID
    changed_at: datetime = field(default_factory=lambda: utcnow().replace(microsecond=0))
    id: UUID = field(default_factory=uuid.uuid4)
    # Timecard version the mutation produced; orders groups sharing a second
    record_version: Optional[int] = None
    entries: List[TimecardAuditEntry] = field(default_factory=list)

    @classmethod
    def start(
        cls,
        changed_by: UUID,
        now: Optional[datetime] = None,
        record_version: Optional[int] = None,
    ) -> "ChangeGroup":
        if now is None:
            return cls(changed_by=changed_by, record_version=record_version)
        return cls(changed_by=changed_by, changed_at=now.replace(microsecond=0), record_version=record_version)


def build_entry(
    timecard_id: UUID,
    group: ChangeGroup,
    field_name: Optional[str],
    old_value: Optional[str],
    new_value: Optional[str],
    action_type: AuditActionType,
    work_date: Optional[date],
) -> TimecardAuditEntry:
    return TimecardAuditEntry(
        id=uuid.uuid4(),
        timecard_id=timecard_id,
        change_group_id=group.id,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        changed_by=group.changed_by,
        changed_at=group.changed_at,
        action_type=action_type,
        work_date=work_date,
        record_version=group.record_version,
    )


async def _persist(db: AsyncSession, timecard_id: UUID, entries: Sequence[TimecardAuditEntry]) -> None:
    db.add_all(entries)
    try:
        await db.flush()
    except SQLAlchemyError as e:
        logger.error(
            "Failed to write %d audit entries for timecard %s", len(entries), timecard_id,
            exc_info=True,
        )
        raise AuditPersistenceFailure(timecard_id, e) from e


async def record_changes(
    db: AsyncSession,
    timecard_id: UUID,
    changes: Sequence[FieldChange],
    changed_by: UUID,
    action_type: AuditActionType,
    work_date: Optional[date] = None,
    *,
    group: Optional[ChangeGroup] = None,
) -> ChangeGroup:
    """
    Write one audit entry per field change, all in one change group.

    Runs inside the caller's transaction and never commits. An empty change
    list writes nothing. Any storage failure raises AuditPersistenceFailure
    so the caller's transaction rolls back together with the record change.

    Args:
        db: Session holding the open transaction
        timecard_id: Record the changes belong to
        changes: Output of detect_changes()
        changed_by: Acting user (or the system actor)
        action_type: Classification chosen by the caller
        work_date: Work date for multi-day records
        group: Existing group to join; a new one is started if omitted

    Returns:
        The change group, with the written entries appended
    """
    if group is None:
        group = ChangeGroup.start(changed_by)
    if not changes:
        return group

    entries = [
        build_entry(
            timecard_id,
            group,
            change.field_name,
            change.old_value,
            change.new_value,
            action_type,
            work_date,
        )
        for change in changes
    ]
    await _persist(db, timecard_id, entries)
    group.entries.extend(entries)
    return group


async def record_status_change(
    db: AsyncSession,
    timecard_id: UUID,
    old_status: TimecardStatus,
    new_status: TimecardStatus,
    changed_by: UUID,
    work_date: Optional[date] = None,
    *,
    group: Optional[ChangeGroup] = None,
) -> ChangeGroup:
    """Write the whole-record status entry (field_name NULL)."""
    if group is None:
        group = ChangeGroup.start(changed_by)
    entry = build_entry(
        timecard_id,
        group,
        None,
        TimecardStatus(old_status).value,
        TimecardStatus(new_status).value,
        AuditActionType.STATUS_CHANGE,
        work_date,
    )
    await _persist(db, timecard_id, [entry])
    group.entries.append(entry)
    return group
