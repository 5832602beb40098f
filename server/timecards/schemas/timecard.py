from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID
from timecards.models.timecard import PayType, TimecardStatus, WorkerCategory
from timecards.services.time_clock_service import ClockAction, DerivedPhase
from timecards.services.timecard_service import Action


class TimecardCheckIn(BaseModel):
    worker_id: UUID
    project_id: UUID
    work_date: date
    worker_category: WorkerCategory = WorkerCategory.STAFF
    pay_type: PayType = PayType.HOURLY
    pay_rate: Optional[Decimal] = Field(None, ge=0)
    overtime_rate: Optional[Decimal] = Field(None, ge=0)
    daily_rate: Optional[Decimal] = Field(None, ge=0)
    period_start_date: Optional[date] = None
    period_end_date: Optional[date] = None


class TimecardActionRequest(BaseModel):
    action: Action
    payload: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = Field(None, ge=1, description="Version last seen by the caller; a mismatch returns 409")


class ClockStatusResponse(BaseModel):
    phase: DerivedPhase
    next_action: Optional[ClockAction] = None
    shift_hours: float
    is_overtime: bool
    break_minimum_met: Optional[bool] = None
    break_ends_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TimecardResponse(BaseModel):
    id: UUID
    worker_id: UUID
    project_id: UUID
    work_date: date
    period_start_date: date
    period_end_date: date
    worker_category: WorkerCategory
    check_in_time: Optional[datetime] = None
    break_start_time: Optional[datetime] = None
    break_end_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    total_hours: Decimal
    break_duration_minutes: Decimal
    pay_type: PayType
    pay_rate: Optional[Decimal] = None
    total_pay: Decimal
    status: TimecardStatus
    manually_edited: bool
    no_break_affirmed: bool
    forced_stop: bool
    admin_notes: Optional[str] = None
    edit_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_fields: Optional[List[str]] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[UUID] = None
    version: int
    created_at: datetime
    updated_at: datetime
    # Derived on read, never stored
    clock: Optional[ClockStatusResponse] = None

    class Config:
        from_attributes = True


class TimecardMutationResponse(BaseModel):
    timecard: TimecardResponse
    change_group_id: Optional[UUID] = None
    entries_written: int = 0
    forced_stop: bool = False


class SweepResponse(BaseModel):
    checked: int
    stopped: int
    failed: int
