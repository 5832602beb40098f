"""
Service for computing timecard totals and validating timestamp order.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from timecards.models.timecard import PayType, Timecard
from timecards.services.policy import TimecardPolicy

CENTS = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TimecardTotals:
    total_hours: Decimal
    break_duration_minutes: Decimal
    total_pay: Decimal


def compute_break_minutes(record: Timecard) -> Decimal:
    if record.break_start_time is None or record.break_end_time is None:
        return Decimal("0")
    seconds = (record.break_end_time - record.break_start_time).total_seconds()
    return round_money(Decimal(str(seconds)) / 60)


def compute_pay(
    total_hours: Decimal,
    pay_type: PayType,
    pay_rate: Optional[Decimal],
    overtime_rate: Optional[Decimal],
    daily_rate: Optional[Decimal],
    policy: TimecardPolicy,
) -> Decimal:
    """
    Calculate pay for worked hours.

    Args:
        total_hours: Worked hours after the break is deducted
        pay_type: "hourly" or "daily"
        pay_rate: Base hourly rate
        overtime_rate: Explicit overtime rate (defaults to pay_rate * multiplier)
        daily_rate: Flat rate for daily workers (falls back to pay_rate)
        policy: Regular-hours threshold and overtime multiplier

    Returns:
        Pay rounded to cents
    """
    if PayType(pay_type) == PayType.DAILY:
        if total_hours <= 0:
            return Decimal("0.00")
        rate = daily_rate if daily_rate is not None else pay_rate
        return round_money(Decimal(rate or 0))

    if pay_rate is None:
        return Decimal("0.00")

    regular_limit = Decimal(str(policy.regular_hours_per_day))
    regular_hours = min(total_hours, regular_limit)
    overtime_hours = max(Decimal("0"), total_hours - regular_limit)
    if overtime_rate is None:
        overtime_rate = Decimal(pay_rate) * policy.overtime_multiplier

    return round_money(regular_hours * Decimal(pay_rate) + overtime_hours * Decimal(overtime_rate))


def calculate_totals(record: Timecard, policy: TimecardPolicy) -> TimecardTotals:
    """Hours, break minutes and pay for a record. Open shifts total zero."""
    break_minutes = compute_break_minutes(record)
    if record.check_in_time is None or record.check_out_time is None:
        return TimecardTotals(Decimal("0.00"), break_minutes, Decimal("0.00"))

    shift_seconds = (record.check_out_time - record.check_in_time).total_seconds()
    worked_hours = max(Decimal("0"), Decimal(str(shift_seconds)) / 3600 - break_minutes / 60)
    total_hours = round_money(worked_hours)

    total_pay = compute_pay(
        total_hours,
        record.pay_type or PayType.HOURLY,
        record.pay_rate,
        record.overtime_rate,
        record.daily_rate,
        policy,
    )
    return TimecardTotals(total_hours, break_minutes, total_pay)


def apply_totals(record: Timecard, policy: TimecardPolicy) -> TimecardTotals:
    totals = calculate_totals(record, policy)
    record.total_hours = totals.total_hours
    record.break_duration_minutes = totals.break_duration_minutes
    record.total_pay = totals.total_pay
    return totals


def validate_time_sequence(
    record: Timecard,
    policy: TimecardPolicy,
    now: Optional[datetime] = None,
) -> List[str]:
    """Return every ordering violation on the record (empty if valid).

    With ``now``, an open shift must also still be within the ceiling.
    """
    errors: List[str] = []
    check_in = record.check_in_time
    check_out = record.check_out_time
    break_start = record.break_start_time
    break_end = record.break_end_time

    if check_in is None:
        if any(t is not None for t in (check_out, break_start, break_end)):
            errors.append("Check-in time is required")
        return errors

    if check_out is not None and check_out < check_in:
        errors.append("Check-out time must be after check-in time")

    if break_end is not None and break_start is None:
        errors.append("Break end time requires a break start time")

    if break_start is not None:
        if break_start < check_in:
            errors.append("Break start time must be after check-in time")
        if break_end is not None and break_end < break_start:
            errors.append("Break end time must be after break start time")
        if check_out is not None:
            if break_end is None:
                errors.append("Break must end before check-out")
            elif break_end > check_out:
                errors.append("Break end time must be before check-out time")

    if check_out is not None and (check_out - check_in) > policy.max_shift:
        errors.append(
            f"Shift exceeds {policy.max_hours_before_stop:g}-hour limit - requires manual review"
        )
    elif check_out is None and now is not None and (now - check_in) > policy.max_shift:
        errors.append(
            f"Open shift already exceeds {policy.max_hours_before_stop:g}-hour limit - set a check-out time"
        )

    if break_start is not None and break_start > check_in + policy.max_shift:
        errors.append(f"Break must start within {policy.max_hours_before_stop:g} hours of check-in")

    return errors
