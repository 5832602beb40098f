"""
Mutation entrypoint for timecards.

Every change to a timecard goes through apply(): the record is re-read under
a row lock, guards run against that fresh state, the change is diffed and
audited, and record plus audit trail commit together or not at all.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID
import enum
import uuid
import logging

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from timecards.core.database import utcnow
from timecards.models.audit_entry import AuditActionType
from timecards.models.timecard import PayType, Timecard, TimecardStatus, WorkerCategory
from timecards.services.audit_service import ChangeGroup, record_changes, record_status_change
from timecards.services.break_policy_service import resolve_break_end
from timecards.services.calculation_service import apply_totals, validate_time_sequence
from timecards.services.change_detection_service import detect_changes, snapshot
from timecards.services.errors import (
    ConcurrentModification,
    EngineError,
    PermissionDenied,
    RecordNotFound,
    ValidationError,
)
from timecards.services.lifecycle_service import (
    ActorContext,
    LifecycleAction,
    TimecardLifecycleMachine,
)
from timecards.services.notification_service import (
    NotificationEvent,
    NotificationEventType,
    publish_safely,
)
from timecards.services.policy import TimecardPolicy
from timecards.services.shift_limit_service import SYSTEM_ACTOR_ID, shift_exceeded, stop_shift
from timecards.services.time_clock_service import ACTION_FIELDS, ClockAction, check_clock_transition

logger = logging.getLogger(__name__)

SYSTEM_CONTEXT = ActorContext(actor_id=SYSTEM_ACTOR_ID, is_owner=False, can_approve=True)


class Action(str, enum.Enum):
    CHECK_IN = "check_in"
    START_BREAK = "start_break"
    END_BREAK = "end_break"
    CHECK_OUT = "check_out"
    EDIT = "edit"
    RESOLVE_MISSING_BREAK = "resolve_missing_break"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    EDIT_AND_RETURN = "edit_and_return"
    REOPEN = "reopen"
    FORCE_STOP = "force_stop"


CLOCK_ACTIONS = {
    Action.CHECK_IN: ClockAction.CHECK_IN,
    Action.START_BREAK: ClockAction.START_BREAK,
    Action.END_BREAK: ClockAction.END_BREAK,
    Action.CHECK_OUT: ClockAction.CHECK_OUT,
}

# Fields accepted in an edit payload's "updates"
EDITABLE_UPDATES = ("check_in_time", "break_start_time", "break_end_time", "check_out_time", "pay_rate", "manually_edited")
APPROVER_ONLY_UPDATES = frozenset({"pay_rate"})

_timestamp_adapter = TypeAdapter(Optional[datetime])
_decimal_adapter = TypeAdapter(Optional[Decimal])
_bool_adapter = TypeAdapter(bool)
_field_list_adapter = TypeAdapter(Optional[List[str]])


@dataclass
class MutationResult:
    """Outcome of apply(): the updated record, or the error that stopped it."""

    record: Optional[Timecard] = None
    error: Optional[EngineError] = None
    change_group_id: Optional[UUID] = None
    entries_written: int = 0
    forced_stop: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Plan:
    action_type: Optional[AuditActionType] = None
    new_status: Optional[TimecardStatus] = None
    event_type: Optional[NotificationEventType] = None
    noop: bool = False
    # Status moves only when a field actually changed
    status_follows_changes: bool = False


@dataclass
class _Outcome:
    group: Optional[ChangeGroup] = None
    events: List[NotificationEvent] = field(default_factory=list)

    @property
    def entries_written(self) -> int:
        return len(self.group.entries) if self.group else 0


def _parse(adapter: TypeAdapter, name: str, value: Any):
    try:
        return adapter.validate_python(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid value for {name}", [err["msg"] for err in e.errors()]) from e


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_updates(updates: Optional[Dict[str, Any]], context: ActorContext) -> Dict[str, Any]:
    """Validate an edit payload's field updates."""
    updates = updates or {}
    unknown = sorted(set(updates) - set(EDITABLE_UPDATES))
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")

    parsed: Dict[str, Any] = {}
    for name, value in updates.items():
        if name in APPROVER_ONLY_UPDATES and not context.can_approve:
            raise PermissionDenied(f"Only an approver may change {name}")
        if name in ACTION_FIELDS.values():
            parsed[name] = _as_utc(_parse(_timestamp_adapter, name, value))
        elif name == "pay_rate":
            rate = _parse(_decimal_adapter, name, value)
            if rate is not None and rate < 0:
                raise ValidationError("Pay rate cannot be negative")
            parsed[name] = rate
        else:
            parsed[name] = _parse(_bool_adapter, name, value)
    return parsed


def _apply_updates(record: Timecard, payload: Dict[str, Any], context: ActorContext) -> None:
    for name, value in parse_updates(payload.get("updates"), context).items():
        setattr(record, name, value)
    comment = payload.get("edit_comment")
    if comment:
        record.edit_comments = comment
    note = payload.get("admin_note")
    if note and context.can_approve:
        record.admin_notes = note


def _raise_if(error: Optional[EngineError]) -> None:
    if error is not None:
        raise error


# Handlers mutate the record in place and describe how to audit it. Guards
# return typed errors; handlers raise them to abort the transaction.

def _clock(action: Action, record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    machine = TimecardLifecycleMachine
    _raise_if(machine.check_time_tracking(action.value, record, context))
    clock_action = CLOCK_ACTIONS[action]
    _raise_if(check_clock_transition(clock_action, record))

    if (
        clock_action == ClockAction.CHECK_OUT
        and WorkerCategory(record.worker_category) == WorkerCategory.TALENT_ESCORT
        and record.break_end_time is not None
        and not context.can_approve
    ):
        raise PermissionDenied("Talent escorts are checked out by their supervisor")

    error, action_type, new_status = machine.classify_edit(record, context, action.value)
    _raise_if(error)

    if clock_action == ClockAction.END_BREAK:
        resolution = resolve_break_end(
            record.break_start_time,
            now,
            policy.break_minutes_for(record.worker_category),
            policy.break_grace_minutes,
        )
        record.break_end_time = resolution.break_end_time
        if resolution.manually_edited:
            record.manually_edited = True
    else:
        setattr(record, ACTION_FIELDS[clock_action], now)
    return _Plan(action_type=action_type, new_status=new_status, status_follows_changes=True)


def _edit(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    error, action_type, new_status = TimecardLifecycleMachine.classify_edit(record, context)
    _raise_if(error)
    _apply_updates(record, payload, context)
    return _Plan(action_type=action_type, new_status=new_status, status_follows_changes=True)


def _resolve_missing_break(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    machine = TimecardLifecycleMachine
    error, action_type, new_status = machine.classify_edit(record, context, Action.RESOLVE_MISSING_BREAK.value)
    _raise_if(error)
    if not machine.needs_break_resolution(record, policy):
        return _Plan(noop=True)

    if _parse(_bool_adapter, "no_break_taken", payload.get("no_break_taken", False)):
        record.no_break_affirmed = True
    else:
        start = _as_utc(_parse(_timestamp_adapter, "break_start_time", payload.get("break_start_time")))
        end = _as_utc(_parse(_timestamp_adapter, "break_end_time", payload.get("break_end_time")))
        if start is None or end is None:
            raise ValidationError("Provide break_start_time and break_end_time, or set no_break_taken")
        record.break_start_time = start
        record.break_end_time = end
        record.manually_edited = True
    return _Plan(action_type=action_type, new_status=new_status, status_follows_changes=True)


def _submit(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    _raise_if(TimecardLifecycleMachine.check_submit(record, context, policy))
    record.submitted_at = now
    action_type = AuditActionType.USER_EDIT if context.is_owner else AuditActionType.ADMIN_EDIT
    return _Plan(action_type=action_type, new_status=TimecardStatus.SUBMITTED)


def _approve(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    _raise_if(TimecardLifecycleMachine.check_review(LifecycleAction.APPROVE, record, context))
    record.approved_at = now
    record.approved_by = context.actor_id
    comment = payload.get("comment")
    if comment:
        record.edit_comments = comment
    return _Plan(
        action_type=AuditActionType.ADMIN_EDIT,
        new_status=TimecardStatus.APPROVED,
        event_type=NotificationEventType.TIMECARD_APPROVED,
    )


def _reject(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    reason = payload.get("reason") if isinstance(payload.get("reason"), str) else None
    _raise_if(TimecardLifecycleMachine.check_review(LifecycleAction.REJECT, record, context, reason))
    record.rejection_reason = reason.strip()
    fields = _parse(_field_list_adapter, "rejected_fields", payload.get("rejected_fields"))
    if fields:
        record.rejected_fields = sorted(set(fields))
    return _Plan(
        action_type=AuditActionType.REJECTION_EDIT,
        new_status=TimecardStatus.REJECTED,
        event_type=NotificationEventType.TIMECARD_REJECTED,
    )


def _edit_and_return(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    _raise_if(TimecardLifecycleMachine.check_review(LifecycleAction.EDIT_AND_RETURN, record, context))
    _apply_updates(record, payload, context)
    record.submitted_at = None
    return _Plan(action_type=AuditActionType.REJECTION_EDIT, new_status=TimecardStatus.DRAFT)


def _reopen(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    _raise_if(TimecardLifecycleMachine.check_reopen(record, context))
    return _Plan(new_status=TimecardStatus.DRAFT)


def _force_stop(record: Timecard, payload, context: ActorContext, policy: TimecardPolicy, now: datetime) -> _Plan:
    if context.actor_id != SYSTEM_ACTOR_ID:
        raise PermissionDenied("Shifts are force-stopped by the system only")
    if not shift_exceeded(record, policy, now):
        return _Plan(noop=True)
    stop_shift(record, policy)
    logger.warning(f"Timecard {record.id} exceeded {policy.max_hours_before_stop:g} hours; shift force-stopped")
    return _Plan(
        action_type=AuditActionType.ADMIN_EDIT,
        event_type=NotificationEventType.SHIFT_FORCE_STOPPED,
    )


_HANDLERS: Dict[Action, Callable[..., _Plan]] = {
    Action.EDIT: _edit,
    Action.RESOLVE_MISSING_BREAK: _resolve_missing_break,
    Action.SUBMIT: _submit,
    Action.APPROVE: _approve,
    Action.REJECT: _reject,
    Action.EDIT_AND_RETURN: _edit_and_return,
    Action.REOPEN: _reopen,
    Action.FORCE_STOP: _force_stop,
}


def _dispatch(action: Action, record: Timecard, payload, context, policy, now) -> _Plan:
    if action in CLOCK_ACTIONS:
        return _clock(action, record, payload, context, policy, now)
    return _HANDLERS[action](record, payload, context, policy, now)


async def _load_for_update(db: AsyncSession, record_id: UUID) -> Timecard:
    result = await db.execute(
        select(Timecard)
        .where(Timecard.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise RecordNotFound(record_id)
    return record


async def _mutate(
    db: AsyncSession,
    record: Timecard,
    action: Action,
    payload: Dict[str, Any],
    context: ActorContext,
    policy: TimecardPolicy,
    now: datetime,
) -> _Outcome:
    """Run one action against a locked record inside the open transaction."""
    before = snapshot(record)
    old_status = TimecardStatus(record.status)

    plan = _dispatch(action, record, payload, context, policy, now)
    if plan.noop:
        return _Outcome()

    errors = validate_time_sequence(record, policy, now)
    if errors:
        raise ValidationError(errors[0], errors)
    apply_totals(record, policy)

    changes = detect_changes(before, snapshot(record))
    new_status = plan.new_status if plan.new_status not in (None, old_status) else None
    if plan.status_follows_changes and not changes:
        new_status = None
    if new_status is not None:
        record.status = new_status
    if not changes and new_status is None:
        return _Outcome()

    is_new = record in db.new
    try:
        await db.flush()
    except StaleDataError as e:
        raise ConcurrentModification(record.id) from e
    except IntegrityError as e:
        if is_new:
            raise ConcurrentModification(record.id) from e
        raise ValidationError("Timecard violates a storage constraint") from e

    group = ChangeGroup.start(context.actor_id, now, record_version=record.version)
    await record_changes(
        db, record.id, changes, context.actor_id, plan.action_type or AuditActionType.ADMIN_EDIT,
        record.work_date, group=group,
    )
    if new_status is not None:
        await record_status_change(
            db, record.id, old_status, new_status, context.actor_id, record.work_date, group=group,
        )

    outcome = _Outcome(group=group)
    if plan.event_type is not None:
        outcome.events.append(
            NotificationEvent(record_id=record.id, event_type=plan.event_type, actor=context.actor_id, timestamp=now)
        )
    return outcome


async def _commit_outcome(db: AsyncSession, outcome: _Outcome, notifier) -> None:
    await db.commit()
    for event in outcome.events:
        publish_safely(notifier, event)


def _failed(record_id, action: Action, context: ActorContext, error: EngineError, forced: bool) -> MutationResult:
    logger.warning(
        f"Timecard {record_id} {action.value} by {context.actor_id} rejected: {error.code}",
        extra={"error_code": error.code, "detail": error.message},
    )
    return MutationResult(error=error, forced_stop=forced)


async def apply(
    db: AsyncSession,
    record_id: UUID,
    action,
    payload: Optional[Dict[str, Any]],
    context: ActorContext,
    policy: TimecardPolicy,
    *,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
    notifier=None,
) -> MutationResult:
    """
    Apply one action to a timecard.

    Args:
        db: Session; apply() owns the transaction and commits or rolls back
        record_id: Timecard to mutate
        action: An Action (or its string value)
        payload: Action-specific input
        context: Acting user plus ownership and approval capability
        policy: Break, shift and pay configuration
        expected_version: Version the caller last saw; a mismatch is a
            ConcurrentModification
        now: Clock override
        notifier: Sink for outbound events (defaults to the logging sink)

    Returns:
        MutationResult with the updated record, or with the typed error
    """
    now = _as_utc(now) or utcnow()
    try:
        action = Action(action)
    except ValueError:
        return MutationResult(error=ValidationError(f"Unknown action '{action}'"))
    payload = payload or {}
    forced = False

    try:
        record = await _load_for_update(db, record_id)
        if expected_version is not None and record.version != expected_version:
            raise ConcurrentModification(record_id, expected_version, record.version)

        # An over-limit shift is stopped in its own commit before anything else runs
        if action != Action.FORCE_STOP and shift_exceeded(record, policy, now):
            stop_outcome = await _mutate(db, record, Action.FORCE_STOP, {}, SYSTEM_CONTEXT, policy, now)
            await _commit_outcome(db, stop_outcome, notifier)
            forced = True
            record = await _load_for_update(db, record_id)

        outcome = await _mutate(db, record, action, payload, context, policy, now)
        await _commit_outcome(db, outcome, notifier)
    except EngineError as e:
        await db.rollback()
        return _failed(record_id, action, context, e, forced)
    except BaseException:
        await db.rollback()
        raise

    logger.info(
        f"Timecard {record_id} {action.value} by {context.actor_id}: {outcome.entries_written} audit entries",
    )
    return MutationResult(
        record=record,
        change_group_id=outcome.group.id if outcome.group else None,
        entries_written=outcome.entries_written,
        forced_stop=forced or (action == Action.FORCE_STOP and outcome.entries_written > 0),
    )


async def find_timecard(
    db: AsyncSession,
    worker_id: UUID,
    project_id: UUID,
    work_date: date,
) -> Optional[Timecard]:
    result = await db.execute(
        select(Timecard).where(
            Timecard.worker_id == worker_id,
            Timecard.project_id == project_id,
            Timecard.work_date == work_date,
        )
    )
    return result.scalar_one_or_none()


async def get_timecard(db: AsyncSession, record_id: UUID) -> Optional[Timecard]:
    result = await db.execute(select(Timecard).where(Timecard.id == record_id))
    return result.scalar_one_or_none()


async def check_in(
    db: AsyncSession,
    worker_id: UUID,
    project_id: UUID,
    work_date: date,
    context: ActorContext,
    policy: TimecardPolicy,
    *,
    worker_category: WorkerCategory = WorkerCategory.STAFF,
    pay_type: PayType = PayType.HOURLY,
    pay_rate: Optional[Decimal] = None,
    overtime_rate: Optional[Decimal] = None,
    daily_rate: Optional[Decimal] = None,
    period_start_date: Optional[date] = None,
    period_end_date: Optional[date] = None,
    now: Optional[datetime] = None,
    notifier=None,
) -> MutationResult:
    """Check a worker in, creating their timecard for the day on first check-in."""
    now = _as_utc(now) or utcnow()
    existing = await find_timecard(db, worker_id, project_id, work_date)
    if existing is not None:
        return await apply(
            db, existing.id, Action.CHECK_IN, {}, context, policy, now=now, notifier=notifier,
        )

    record = Timecard(
        id=uuid.uuid4(),
        worker_id=worker_id,
        project_id=project_id,
        work_date=work_date,
        period_start_date=period_start_date or work_date,
        period_end_date=period_end_date or work_date,
        worker_category=WorkerCategory(worker_category),
        pay_type=PayType(pay_type),
        pay_rate=pay_rate,
        overtime_rate=overtime_rate,
        daily_rate=daily_rate,
        status=TimecardStatus.DRAFT,
        manually_edited=False,
        no_break_affirmed=False,
        forced_stop=False,
        total_hours=Decimal("0"),
        break_duration_minutes=Decimal("0"),
        total_pay=Decimal("0"),
    )
    try:
        db.add(record)
        outcome = await _mutate(db, record, Action.CHECK_IN, {}, context, policy, now)
        await _commit_outcome(db, outcome, notifier)
    except EngineError as e:
        await db.rollback()
        return _failed(record.id, Action.CHECK_IN, context, e, False)
    except BaseException:
        await db.rollback()
        raise

    logger.info(f"Timecard {record.id} created by check-in of worker {worker_id}")
    return MutationResult(
        record=record,
        change_group_id=outcome.group.id if outcome.group else None,
        entries_written=outcome.entries_written,
    )


async def with_concurrency_retry(
    operation: Callable[[], Awaitable[MutationResult]],
    attempts: int = 3,
) -> MutationResult:
    """
    Re-run a mutation that lost a race, up to ``attempts`` times.

    ``operation`` must re-read state on each call (apply() does). Only
    ConcurrentModification is retried.
    """
    result = await operation()
    attempt = 1
    while isinstance(result.error, ConcurrentModification) and attempt < attempts:
        attempt += 1
        logger.info(f"Retrying after concurrent modification (attempt {attempt} of {attempts})")
        result = await operation()
    return result
