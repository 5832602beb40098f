from datetime import date
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from timecards.core.database import get_db, utcnow
from timecards.core.dependencies import (
    Actor,
    get_approver,
    get_current_actor,
    get_notifier,
    get_policy,
    get_session_factory,
)
from timecards.core.error_handling import handle_endpoint_errors, parse_uuid, raise_for_engine_error
from timecards.models.audit_entry import AuditActionType, TimecardAuditEntry
from timecards.models.timecard import Timecard
from timecards.schemas.audit import (
    AuditEntryResponse,
    AuditGroupResponse,
    AuditPageResponse,
    AuditStatisticsResponse,
)
from timecards.schemas.timecard import (
    ClockStatusResponse,
    SweepResponse,
    TimecardActionRequest,
    TimecardCheckIn,
    TimecardMutationResponse,
    TimecardResponse,
)
from timecards.services import audit_query_service
from timecards.services.audit_query_service import AuditFilter, AuditGroup
from timecards.services.errors import RecordNotFound
from timecards.services.policy import TimecardPolicy
from timecards.services.shift_limit_service import sweep_open_shifts
from timecards.services.time_clock_service import clock_status
from timecards.services.timecard_service import (
    MutationResult,
    apply,
    check_in,
    get_timecard,
    with_concurrency_retry,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def to_response(record: Timecard, policy: TimecardPolicy) -> TimecardResponse:
    response = TimecardResponse.model_validate(record)
    response.clock = ClockStatusResponse.model_validate(clock_status(record, policy, utcnow()))
    return response


def to_mutation_response(result: MutationResult, policy: TimecardPolicy) -> TimecardMutationResponse:
    if not result.ok:
        raise_for_engine_error(result.error)
    return TimecardMutationResponse(
        timecard=to_response(result.record, policy),
        change_group_id=result.change_group_id,
        entries_written=result.entries_written,
        forced_stop=result.forced_stop,
    )


def to_entry_response(entry: TimecardAuditEntry) -> AuditEntryResponse:
    described = audit_query_service.describe_entry(entry)
    return AuditEntryResponse(
        id=entry.id,
        change_group_id=entry.change_group_id,
        old_value=entry.old_value,
        new_value=entry.new_value,
        changed_by=entry.changed_by,
        changed_at=entry.changed_at,
        action_type=entry.action_type,
        work_date=entry.work_date,
        **described,
    )


def to_group_response(group: AuditGroup) -> AuditGroupResponse:
    return AuditGroupResponse(
        change_group_id=group.change_group_id,
        changed_by=group.changed_by,
        changed_at=group.changed_at,
        action_type=group.action_type,
        entries=[to_entry_response(e) for e in group.entries],
    )


async def load_timecard(db: AsyncSession, timecard_id: str) -> Timecard:
    record_id = parse_uuid(timecard_id, "timecard ID")
    record = await get_timecard(db, record_id)
    if record is None:
        raise_for_engine_error(RecordNotFound(record_id))
    return record


@router.post("/check-in", response_model=TimecardMutationResponse, status_code=status.HTTP_201_CREATED)
@handle_endpoint_errors(operation_name="check_in")
async def check_in_endpoint(
    data: TimecardCheckIn,
    actor: Actor = Depends(get_current_actor),
    policy: TimecardPolicy = Depends(get_policy),
    notifier=Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    """Check a worker in, creating the day's timecard on first check-in."""
    result = await check_in(
        db,
        data.worker_id,
        data.project_id,
        data.work_date,
        actor.context_for(worker_id=data.worker_id),
        policy,
        worker_category=data.worker_category,
        pay_type=data.pay_type,
        pay_rate=data.pay_rate,
        overtime_rate=data.overtime_rate,
        daily_rate=data.daily_rate,
        period_start_date=data.period_start_date,
        period_end_date=data.period_end_date,
        notifier=notifier,
    )
    return to_mutation_response(result, policy)


@router.post("/sweep", response_model=SweepResponse)
@handle_endpoint_errors(operation_name="sweep_open_shifts")
async def sweep_endpoint(
    actor: Actor = Depends(get_approver),
    policy: TimecardPolicy = Depends(get_policy),
    notifier=Depends(get_notifier),
    session_factory=Depends(get_session_factory),
):
    """Run one shift-limit sweep now (approvers only)."""
    logger.info(f"Shift sweep requested by {actor.actor_id}")
    sweep = await sweep_open_shifts(session_factory, policy, notifier=notifier)
    return SweepResponse(checked=sweep.checked, stopped=sweep.stopped, failed=sweep.failed)


@router.get("/{timecard_id}", response_model=TimecardResponse)
@handle_endpoint_errors(operation_name="get_timecard")
async def get_timecard_endpoint(
    timecard_id: str,
    actor: Actor = Depends(get_current_actor),
    policy: TimecardPolicy = Depends(get_policy),
    db: AsyncSession = Depends(get_db),
):
    """Get a timecard with its derived clock status."""
    record = await load_timecard(db, timecard_id)
    return to_response(record, policy)


@router.post("/{timecard_id}/actions", response_model=TimecardMutationResponse)
@handle_endpoint_errors(operation_name="apply_timecard_action")
async def apply_action_endpoint(
    timecard_id: str,
    data: TimecardActionRequest,
    actor: Actor = Depends(get_current_actor),
    policy: TimecardPolicy = Depends(get_policy),
    notifier=Depends(get_notifier),
    db: AsyncSession = Depends(get_db),
):
    """Apply a time-clock, edit or lifecycle action to a timecard."""
    record = await load_timecard(db, timecard_id)
    context = actor.context_for(record)
    record_id = record.id

    async def run() -> MutationResult:
        return await apply(
            db,
            record_id,
            data.action,
            data.payload,
            context,
            policy,
            expected_version=data.expected_version,
            notifier=notifier,
        )

    # Retry only when the caller did not pin a version
    if data.expected_version is None:
        result = await with_concurrency_retry(run)
    else:
        result = await run()
    return to_mutation_response(result, policy)


@router.get("/{timecard_id}/audit-logs", response_model=AuditPageResponse)
@handle_endpoint_errors(operation_name="get_timecard_audit_logs")
async def get_audit_logs_endpoint(
    timecard_id: str,
    grouped: bool = Query(False),
    action_type: Optional[List[AuditActionType]] = Query(None),
    field_name: Optional[List[str]] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail for a timecard, newest first."""
    record = await load_timecard(db, timecard_id)
    if date_from and date_to and date_from > date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must be on or before date_to",
        )
    audit_filter = AuditFilter(
        action_types=action_type,
        field_names=field_name,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )

    if grouped:
        page = await audit_query_service.query_grouped(db, record.id, audit_filter)
        items = [to_group_response(g) for g in page.items]
    else:
        page = await audit_query_service.query(db, record.id, audit_filter)
        items = [to_entry_response(e) for e in page.items]

    return AuditPageResponse(
        items=items,
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/{timecard_id}/audit-logs/statistics", response_model=AuditStatisticsResponse)
@handle_endpoint_errors(operation_name="get_timecard_audit_statistics")
async def get_audit_statistics_endpoint(
    timecard_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Summary counts for a timecard's audit trail."""
    record = await load_timecard(db, timecard_id)
    stats = await audit_query_service.audit_statistics(db, record.id)
    return AuditStatisticsResponse(
        total_entries=stats.total_entries,
        by_action_type=stats.by_action_type,
        last_modified_at=stats.last_modified_at,
        last_modified_by=stats.last_modified_by,
        rejected_fields=await audit_query_service.rejected_fields(db, record.id),
    )
