from sqlalchemy import Column, String, ForeignKey, Date, Enum, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship
import uuid
import enum
from timecards.core.database import Base, UTCDateTime


class AuditActionType(str, enum.Enum):
    USER_EDIT = "user_edit"
    ADMIN_EDIT = "admin_edit"
    REJECTION_EDIT = "rejection_edit"
    STATUS_CHANGE = "status_change"


class TimecardAuditEntry(Base):
    """One changed field of one timecard mutation.

    Rows are write-once: see timecards.core.immutability for the guards that
    reject UPDATE and DELETE.
    """

    __tablename__ = "timecard_audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    timecard_id = Column(Uuid, ForeignKey("timecards.id", ondelete="RESTRICT"), nullable=False, index=True)
    change_group_id = Column(Uuid, nullable=False, index=True)
    # NULL for whole-record status changes
    field_name = Column(String(100), nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    changed_by = Column(Uuid, nullable=False)
    changed_at = Column(UTCDateTime, nullable=False)
    action_type = Column(Enum(AuditActionType, values_callable=lambda x: [e.value for e in x]), nullable=False)
    work_date = Column(Date, nullable=True)
    # Timecard version after the mutation; breaks ties between groups in the same second
    record_version = Column(Integer, nullable=True)

    timecard = relationship("Timecard", back_populates="audit_entries")

    __table_args__ = (
        Index("idx_timecard_audit_log_timecard_changed", "timecard_id", "changed_at"),
        Index("idx_timecard_audit_log_action_type", "timecard_id", "action_type"),
    )
