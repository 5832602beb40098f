from pydantic import BaseModel
from typing import Dict, List, Optional, Union
from datetime import date, datetime
from uuid import UUID
from timecards.models.audit_entry import AuditActionType


class AuditEntryResponse(BaseModel):
    id: UUID
    change_group_id: UUID
    field_name: str
    field_label: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    old_display: str
    new_display: str
    changed_by: UUID
    changed_at: datetime
    action_type: AuditActionType
    work_date: Optional[date] = None


class AuditGroupResponse(BaseModel):
    change_group_id: UUID
    changed_by: UUID
    changed_at: datetime
    action_type: AuditActionType
    entries: List[AuditEntryResponse]


class AuditPageResponse(BaseModel):
    items: List[Union[AuditGroupResponse, AuditEntryResponse]]
    total: int
    limit: int
    offset: int
    has_more: bool


class AuditStatisticsResponse(BaseModel):
    total_entries: int
    by_action_type: Dict[str, int]
    last_modified_at: Optional[datetime] = None
    last_modified_by: Optional[UUID] = None
    rejected_fields: List[str] = []
