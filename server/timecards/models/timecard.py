from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Enum,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship
import uuid
import enum
from timecards.core.database import Base, UTCDateTime, utcnow


class TimecardStatus(str, enum.Enum):
    DRAFT = "draft"
    EDITED_DRAFT = "edited_draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses in which time tracking and edits are allowed
DRAFT_STATUSES = frozenset({TimecardStatus.DRAFT, TimecardStatus.EDITED_DRAFT})


class WorkerCategory(str, enum.Enum):
    TALENT_ESCORT = "talent_escort"
    SUPERVISOR = "supervisor"
    COORDINATOR = "coordinator"
    STAFF = "staff"


class PayType(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"


class Timecard(Base):
    __tablename__ = "timecards"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    worker_id = Column(Uuid, nullable=False, index=True)
    project_id = Column(Uuid, nullable=False, index=True)
    work_date = Column(Date, nullable=False)
    period_start_date = Column(Date, nullable=False)
    period_end_date = Column(Date, nullable=False)
    worker_category = Column(Enum(WorkerCategory, values_callable=lambda x: [e.value for e in x]), nullable=False, default=WorkerCategory.STAFF)

    # Time tracking. The current phase is derived from these four columns.
    check_in_time = Column(UTCDateTime, nullable=True)
    check_out_time = Column(UTCDateTime, nullable=True)
    break_start_time = Column(UTCDateTime, nullable=True)
    break_end_time = Column(UTCDateTime, nullable=True)

    # Derived totals, recomputed after every time mutation
    total_hours = Column(Numeric(6, 2), nullable=False, default=0)
    break_duration_minutes = Column(Numeric(7, 2), nullable=False, default=0)
    total_pay = Column(Numeric(10, 2), nullable=False, default=0)

    pay_type = Column(Enum(PayType, values_callable=lambda x: [e.value for e in x]), nullable=False, default=PayType.HOURLY)
    pay_rate = Column(Numeric(10, 2), nullable=True)
    overtime_rate = Column(Numeric(10, 2), nullable=True)
    daily_rate = Column(Numeric(10, 2), nullable=True)

    status = Column(Enum(TimecardStatus, values_callable=lambda x: [e.value for e in x]), nullable=False, default=TimecardStatus.DRAFT)
    manually_edited = Column(Boolean, nullable=False, default=False)
    no_break_affirmed = Column(Boolean, nullable=False, default=False)
    forced_stop = Column(Boolean, nullable=False, default=False)

    admin_notes = Column(Text, nullable=True)  # private to approvers
    edit_comments = Column(Text, nullable=True)  # shown to the worker
    rejection_reason = Column(Text, nullable=True)
    rejected_fields = Column(JSON, nullable=True)

    submitted_at = Column(UTCDateTime, nullable=True)
    approved_at = Column(UTCDateTime, nullable=True)
    approved_by = Column(Uuid, nullable=True)

    archived_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    audit_entries = relationship(
        "TimecardAuditEntry",
        back_populates="timecard",
        lazy="noload",
        passive_deletes="all",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("worker_id", "project_id", "work_date", name="uq_timecards_worker_project_date"),
        Index("idx_timecards_project_status", "project_id", "status"),
        Index("idx_timecards_open_shifts", "check_out_time", "check_in_time"),
    )

    def __repr__(self) -> str:
        return f"<Timecard {self.id} worker={self.worker_id} status={self.status}>"
