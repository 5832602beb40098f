"""
Field-level diffing between two snapshots of a timecard.

Pure functions only: nothing here touches the session or writes audit rows.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
import enum
import json

from timecards.models.timecard import Timecard


# Fields a mutation may change and the audit trail tracks. Derived totals
# are recomputed from these and are not part of the trail.
EDITABLE_FIELDS = (
    "check_in_time",
    "break_start_time",
    "break_end_time",
    "check_out_time",
    "pay_rate",
    "manually_edited",
    "no_break_affirmed",
    "admin_notes",
    "edit_comments",
    "rejection_reason",
    "rejected_fields",
)

TIMESTAMP_FIELDS = frozenset({
    "check_in_time",
    "break_start_time",
    "break_end_time",
    "check_out_time",
})

# Comparison precision for numeric fields
NUMERIC_PRECISION: Dict[str, Decimal] = {
    "total_hours": Decimal("0.1"),
    "break_duration_minutes": Decimal("1"),
    "pay_rate": Decimal("0.01"),
    "overtime_rate": Decimal("0.01"),
    "daily_rate": Decimal("0.01"),
    "total_pay": Decimal("0.01"),
}

Snapshot = Dict[str, Any]


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    old_value: Optional[str]
    new_value: Optional[str]


def snapshot(record: Timecard, fields=EDITABLE_FIELDS) -> Snapshot:
    """Copy the tracked fields off a record."""
    snap = {}
    for name in fields:
        value = getattr(record, name)
        # JSON columns hold mutable lists
        if isinstance(value, list):
            value = list(value)
        snap[name] = value
    return snap


def _normalize(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0)
    precision = NUMERIC_PRECISION.get(field_name)
    if precision is not None:
        return Decimal(str(value)).quantize(precision, rounding=ROUND_HALF_UP)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def serialize_value(field_name: str, value: Any) -> Optional[str]:
    """
    Serialize a field value for the audit log.

    None stays None (absent or cleared), which is distinct from the string
    "null". Timestamps are stored as UTC ISO-8601 to the second.
    """
    value = _normalize(field_name, value)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def detect_changes(before: Snapshot, after: Snapshot) -> List[FieldChange]:
    """
    Compare two snapshots.

    Returns one FieldChange per differing field, in EDITABLE_FIELDS order
    for known fields. Fields missing (or None) in both snapshots are skipped.
    """
    ordered = [f for f in EDITABLE_FIELDS if f in before or f in after]
    ordered += sorted((set(before) | set(after)) - set(ordered))

    changes: List[FieldChange] = []
    for name in ordered:
        old = _normalize(name, before.get(name))
        new = _normalize(name, after.get(name))
        if old is None and new is None:
            continue
        if old == new:
            continue
        changes.append(
            FieldChange(
                field_name=name,
                old_value=serialize_value(name, before.get(name)),
                new_value=serialize_value(name, after.get(name)),
            )
        )
    return changes
