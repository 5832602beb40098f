"""Timecard lifecycle state machine with transition guards."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from uuid import UUID

from timecards.models.audit_entry import AuditActionType
from timecards.models.timecard import DRAFT_STATUSES, Timecard, TimecardStatus
from timecards.services.errors import (
    EngineError,
    InvalidTransition,
    MissingBreakUnresolved,
    PermissionDenied,
    ValidationError,
)
from timecards.services.policy import TimecardPolicy
from timecards.services.time_clock_service import DerivedPhase, phase_of


class LifecycleAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    EDIT_AND_RETURN = "edit_and_return"
    REOPEN = "reopen"


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, as decided by the external authorization collaborator."""

    actor_id: UUID
    is_owner: bool = False
    can_approve: bool = False


class TimecardLifecycleMachine:
    """State machine for timecard status transitions.

    Allowed transitions:
    - draft -> submitted
    - draft -> edited_draft (approver corrects someone else's draft)
    - edited_draft -> draft (owner edits again)
    - edited_draft -> submitted
    - submitted -> approved | rejected
    - submitted -> draft (edit & return)
    - rejected -> draft (reopen or edit)
    - approved is terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        TimecardStatus.DRAFT: [TimecardStatus.SUBMITTED, TimecardStatus.EDITED_DRAFT],
        TimecardStatus.EDITED_DRAFT: [TimecardStatus.SUBMITTED, TimecardStatus.DRAFT],
        TimecardStatus.SUBMITTED: [
            TimecardStatus.APPROVED,
            TimecardStatus.REJECTED,
            TimecardStatus.DRAFT,
        ],
        TimecardStatus.REJECTED: [TimecardStatus.DRAFT],
        TimecardStatus.APPROVED: [],  # Terminal state
    }

    # Statuses where the clock may run
    TIME_TRACKING_ALLOWED = DRAFT_STATUSES

    # Statuses where field corrections are accepted
    EDIT_ALLOWED = DRAFT_STATUSES | {TimecardStatus.REJECTED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def can_track_time(cls, status: str) -> bool:
        return status in cls.TIME_TRACKING_ALLOWED

    @classmethod
    def can_edit(cls, status: str) -> bool:
        return status in cls.EDIT_ALLOWED

    @classmethod
    def classify_edit(
        cls,
        record: Timecard,
        context: ActorContext,
        action: str = "edit",
    ) -> Tuple[Optional[EngineError], Optional[AuditActionType], Optional[TimecardStatus]]:
        """Decide how a field mutation is classified and where the status goes.

        Returns (error, action_type, new_status). new_status is None when the
        status does not change.

        | status       | actor                  | action_type | new status   |
        |--------------|------------------------|-------------|--------------|
        | draft        | owner                  | user_edit   | -            |
        | draft        | approver, not owner    | admin_edit  | edited_draft |
        | edited_draft | owner                  | user_edit   | draft        |
        | edited_draft | approver, not owner    | admin_edit  | -            |
        | rejected     | owner                  | user_edit   | draft        |
        | rejected     | approver, not owner    | admin_edit  | draft        |
        """
        status = TimecardStatus(record.status)
        if not cls.can_edit(status):
            return InvalidTransition(action, status.value, "timecard is not editable in this status"), None, None

        if context.is_owner:
            action_type = AuditActionType.USER_EDIT
            new_status = TimecardStatus.DRAFT if status != TimecardStatus.DRAFT else None
        elif context.can_approve:
            action_type = AuditActionType.ADMIN_EDIT
            if status == TimecardStatus.DRAFT:
                new_status = TimecardStatus.EDITED_DRAFT
            elif status == TimecardStatus.REJECTED:
                new_status = TimecardStatus.DRAFT
            else:
                new_status = None
        else:
            return PermissionDenied("Only the owner or an approver may change this timecard"), None, None

        return None, action_type, new_status

    @classmethod
    def check_time_tracking(cls, action: str, record: Timecard, context: ActorContext) -> Optional[EngineError]:
        status = TimecardStatus(record.status)
        if not cls.can_track_time(status):
            return InvalidTransition(action, status.value, "time tracking is closed once submitted")
        if not (context.is_owner or context.can_approve):
            return PermissionDenied("Only the owner or an approver may record time on this timecard")
        return None

    @staticmethod
    def shift_hours(record: Timecard) -> float:
        if record.check_in_time is None or record.check_out_time is None:
            return 0.0
        return (record.check_out_time - record.check_in_time).total_seconds() / 3600

    @classmethod
    def needs_break_resolution(cls, record: Timecard, policy: TimecardPolicy) -> bool:
        """True when the shift is long enough to require a break and none is settled."""
        if cls.shift_hours(record) <= policy.missing_break_threshold_hours:
            return False
        has_break = record.break_start_time is not None and record.break_end_time is not None
        return not has_break and not record.no_break_affirmed

    @classmethod
    def check_submit(cls, record: Timecard, context: ActorContext, policy: TimecardPolicy) -> Optional[EngineError]:
        status = TimecardStatus(record.status)
        if not cls.can_transition(status, TimecardStatus.SUBMITTED):
            return InvalidTransition(LifecycleAction.SUBMIT.value, status.value)
        if not (context.is_owner or context.can_approve):
            return PermissionDenied("Only the owner or an approver may submit this timecard")
        phase = phase_of(record)
        if phase != DerivedPhase.CHECKED_OUT:
            return InvalidTransition(LifecycleAction.SUBMIT.value, phase.value, "requires phase 'checked_out'")
        if cls.needs_break_resolution(record, policy):
            return MissingBreakUnresolved(cls.shift_hours(record), policy.missing_break_threshold_hours)
        return None

    @classmethod
    def check_review(
        cls,
        action: LifecycleAction,
        record: Timecard,
        context: ActorContext,
        reason: Optional[str] = None,
    ) -> Optional[EngineError]:
        """Guard for approve, reject and edit_and_return."""
        if not context.can_approve:
            return PermissionDenied(f"Approval capability is required to {action.value} a timecard")
        status = TimecardStatus(record.status)
        if status != TimecardStatus.SUBMITTED:
            return InvalidTransition(action.value, status.value, "requires status 'submitted'")
        if action == LifecycleAction.REJECT and not (reason and reason.strip()):
            return ValidationError("A rejection reason is required")
        return None

    @classmethod
    def check_reopen(cls, record: Timecard, context: ActorContext) -> Optional[EngineError]:
        status = TimecardStatus(record.status)
        if status != TimecardStatus.REJECTED:
            return InvalidTransition(LifecycleAction.REOPEN.value, status.value, "requires status 'rejected'")
        if not (context.is_owner or context.can_approve):
            return PermissionDenied("Only the owner or an approver may reopen this timecard")
        return None
