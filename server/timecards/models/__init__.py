from timecards.models.timecard import Timecard
from timecards.models.audit_entry import TimecardAuditEntry

__all__ = [
    "Timecard",
    "TimecardAuditEntry",
]
