import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./timecards_test.db")
os.environ.setdefault("SHIFT_SWEEP_INTERVAL_SECONDS", "0")

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator
import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from timecards.core.database import Base, get_db
from timecards.core.dependencies import get_notifier, get_session_factory
from timecards.core.immutability import register_immutability_listeners
from timecards.models.audit_entry import TimecardAuditEntry
from timecards.models.timecard import PayType, Timecard, TimecardStatus, WorkerCategory
from timecards.services.lifecycle_service import ActorContext
from timecards.services.notification_service import InMemoryNotificationSink
from timecards.services.policy import TimecardPolicy

WORK_DATE = date(2024, 3, 4)
WORKER_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
APPROVER_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
STRANGER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")
PROJECT_ID = uuid.UUID("44444444-4444-4444-4444-444444444444")

OWNER = ActorContext(actor_id=WORKER_ID, is_owner=True, can_approve=False)
APPROVER = ActorContext(actor_id=APPROVER_ID, is_owner=False, can_approve=True)
STRANGER = ActorContext(actor_id=STRANGER_ID, is_owner=False, can_approve=False)


def at(hour: int, minute: int = 0, second: int = 0, day: date = WORK_DATE) -> datetime:
    """UTC timestamp on the test work date."""
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def immutability_guards():
    register_immutability_listeners()
    yield


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database per test so several sessions can share it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def policy() -> TimecardPolicy:
    return TimecardPolicy()


@pytest.fixture
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def make_timecard(db: AsyncSession):
    """Insert a timecard directly, bypassing the engine (no audit entries).

    The returned instance is detached, so a rollback inside apply() never
    expires it.
    """
    async def _make(**overrides) -> Timecard:
        values = dict(
            id=uuid.uuid4(),
            worker_id=WORKER_ID,
            project_id=PROJECT_ID,
            work_date=WORK_DATE,
            period_start_date=WORK_DATE,
            period_end_date=WORK_DATE,
            worker_category=WorkerCategory.STAFF,
            pay_type=PayType.HOURLY,
            pay_rate=Decimal("20.00"),
            status=TimecardStatus.DRAFT,
            manually_edited=False,
            no_break_affirmed=False,
            forced_stop=False,
            total_hours=Decimal("0"),
            break_duration_minutes=Decimal("0"),
            total_pay=Decimal("0"),
        )
        values.update(overrides)
        record = Timecard(**values)
        db.add(record)
        await db.commit()
        db.expunge(record)
        return record
    return _make


async def fetch_record(session_factory, record_id) -> Timecard:
    """Read a timecard through a fresh session."""
    async with session_factory() as session:
        result = await session.execute(select(Timecard).where(Timecard.id == record_id))
        return result.scalar_one()


async def fetch_entries(session_factory, record_id) -> list[TimecardAuditEntry]:
    async with session_factory() as session:
        result = await session.execute(
            select(TimecardAuditEntry)
            .where(TimecardAuditEntry.timecard_id == record_id)
            .order_by(TimecardAuditEntry.changed_at, TimecardAuditEntry.field_name)
        )
        return list(result.scalars().all())


@pytest.fixture
async def client(session_factory, notifier) -> AsyncGenerator[AsyncClient, None]:
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(actor_id: uuid.UUID, can_approve: bool = False) -> dict:
    return {
        "X-Actor-Id": str(actor_id),
        "X-Actor-Can-Approve": "true" if can_approve else "false",
    }
