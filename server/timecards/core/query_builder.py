"""
Reusable query builder functions shared by the read services.
"""
from typing import Optional, List, Sequence, Tuple
from datetime import date, datetime, time, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_


async def get_paginated_results(
    db: AsyncSession,
    query,
    skip: int = 0,
    limit: int = 100,
    order_by=None,
) -> Tuple[List, int]:
    """
    Execute a paginated query and return results with total count.

    Args:
        db: Database session
        query: SQLAlchemy select query
        skip: Number of records to skip
        limit: Maximum number of records to return
        order_by: Column(s) to order by (optional)

    Returns:
        Tuple of (results_list, total_count)
    """
    count_query = select(func.count()).select_from(query.subquery())
    count_result = await db.execute(count_query)
    total = count_result.scalar() or 0

    if order_by is not None:
        if isinstance(order_by, (list, tuple)):
            query = query.order_by(*order_by)
        else:
            query = query.order_by(order_by)

    result = await db.execute(query.offset(skip).limit(limit))
    items = result.scalars().all()

    return list(items), total


def filter_by_values(
    query,
    column,
    values: Optional[Sequence],
):
    """
    Restrict a column to a set of values. Empty or missing values leave the query unchanged.

    A None inside ``values`` matches NULL.
    """
    if not values:
        return query
    concrete = [v for v in values if v is not None]
    conditions = []
    if concrete:
        conditions.append(column.in_(concrete))
    if len(concrete) != len(values):
        conditions.append(column.is_(None))
    if len(conditions) == 1:
        return query.where(conditions[0])
    return query.where(or_(*conditions))


def _as_utc(value, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)


def filter_by_date_range(
    query,
    column,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
):
    """
    Add date range filter to a query on a timestamp column.

    Args:
        query: SQLAlchemy select query
        column: Timestamp column to filter on
        from_date: Start (inclusive). A date means the start of that UTC day.
        to_date: End (inclusive). A date means the end of that UTC day.

    Returns:
        Modified query
    """
    if from_date:
        query = query.where(column >= _as_utc(from_date))
    if to_date:
        query = query.where(column <= _as_utc(to_date, end_of_day=True))
    return query
