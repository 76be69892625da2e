"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.database import create_schema, create_session_factory, init_db
from billing_engine.models import (
    Client,
    Project,
    Task,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    User,
)
from billing_engine.services import BillingServices, ServiceBundle

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed "today" so lock checks and default ranges are deterministic
TODAY = date(2024, 3, 20)


@pytest.fixture
async def engine(request, tmp_path):
    """Create a test database engine with a fresh schema.

    Tests marked ``file_db`` get a file-backed database: a query cancelled
    mid-flight discards its connection, and a fresh connection to
    ``:memory:`` would be an empty database.
    """
    if request.node.get_closest_marker("file_db"):
        url = f"sqlite+aiosqlite:///{tmp_path}/billing.db"
    else:
        url = TEST_DATABASE_URL
    engine, _ = init_db(url)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with create_session_factory(engine)() as session:
        yield session
        await session.rollback()


@pytest.fixture
def services() -> BillingServices:
    return BillingServices(
        adjustment_max_retries=3,
        aggregation_timeout_seconds=5.0,
        clock=lambda: TODAY,
    )


@pytest.fixture
def bundle(services: BillingServices, session: AsyncSession) -> ServiceBundle:
    """All services bound to the test session."""
    return services.for_session(session)


# ============================================================================
# Directory and catalog
# ============================================================================


@pytest.fixture
async def test_users(session: AsyncSession) -> dict[str, User]:
    """Create test users with directory rates."""
    alice = User(
        user_id=uuid4(),
        full_name="Alice Anders",
        email="alice@example.com",
        role="employee",
        hourly_rate=Decimal("100.00"),
    )
    bob = User(
        user_id=uuid4(),
        full_name="Bob Baker",
        email="bob@example.com",
        role="lead",
        hourly_rate=Decimal("80.00"),
    )
    session.add_all([alice, bob])
    await session.flush()
    return {"alice": alice, "bob": bob}


@pytest.fixture
async def test_client(session: AsyncSession) -> Client:
    client = Client(client_id=uuid4(), name="Acme Corp")
    session.add(client)
    await session.flush()
    return client


@pytest.fixture
async def test_projects(session: AsyncSession, test_client: Client) -> dict[str, Project]:
    """Create an open project, a rate-override project and a locked project."""
    apollo = Project(
        project_id=uuid4(),
        client_id=test_client.client_id,
        name="Apollo",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 12, 31),
    )
    borealis = Project(
        project_id=uuid4(),
        client_id=test_client.client_id,
        name="Borealis",
        start_date=date(2024, 2, 1),
        end_date=None,
        hourly_rate=Decimal("150.00"),
    )
    legacy = Project(
        project_id=uuid4(),
        client_id=None,
        name="Legacy",
        start_date=date(2023, 6, 1),
        end_date=date(2024, 2, 29),
        status="completed",
    )
    session.add_all([apollo, borealis, legacy])
    await session.flush()
    return {"apollo": apollo, "borealis": borealis, "legacy": legacy}


@pytest.fixture
async def test_tasks(session: AsyncSession, test_projects: dict[str, Project]) -> dict[str, Task]:
    design = Task(
        task_id=uuid4(),
        project_id=test_projects["apollo"].project_id,
        name="Design",
    )
    build = Task(
        task_id=uuid4(),
        project_id=test_projects["apollo"].project_id,
        name="Build",
        hourly_rate=Decimal("120.00"),
    )
    research = Task(
        task_id=uuid4(),
        project_id=test_projects["borealis"].project_id,
        name="Research",
    )
    session.add_all([design, build, research])
    await session.flush()
    return {"design": design, "build": build, "research": research}


# ============================================================================
# Timesheets, entries and verification records
# ============================================================================


@pytest.fixture
def make_timesheet(session: AsyncSession):
    """Factory for a user's timesheet starting on a Monday."""

    async def _make(user: User, week_start: date, status: str = "submitted") -> Timesheet:
        timesheet = Timesheet(
            timesheet_id=uuid4(),
            user_id=user.user_id,
            week_start_date=week_start,
            week_end_date=week_start + timedelta(days=6),
            status=status,
        )
        session.add(timesheet)
        await session.flush()
        return timesheet

    return _make


@pytest.fixture
def make_entry(session: AsyncSession):
    """Factory for a stored project entry.

    ``billable_hours`` defaults to all hours; pass ``is_billable=False`` for
    a non-billable entry.
    """

    async def _make(
        timesheet: Timesheet,
        project: Project,
        hours: str | Decimal,
        billable_hours: str | Decimal | None = None,
        is_billable: bool = True,
        task: Task | None = None,
        day_offset: int = 0,
        hourly_rate: str | Decimal | None = None,
    ) -> TimeEntry:
        hours = Decimal(str(hours))
        if not is_billable:
            billable = Decimal("0")
        elif billable_hours is None:
            billable = hours
        else:
            billable = Decimal(str(billable_hours))
        entry = TimeEntry(
            time_entry_id=uuid4(),
            timesheet_id=timesheet.timesheet_id,
            entry_category="project",
            entry_date=timesheet.week_start_date + timedelta(days=day_offset),
            hours=hours,
            is_billable=is_billable,
            billable_hours=billable,
            hourly_rate=Decimal(str(hourly_rate)) if hourly_rate is not None else None,
            project_id=project.project_id,
            task_id=task.task_id if task else None,
            custom_task_description=None if task else "General work",
        )
        session.add(entry)
        timesheet.total_hours = Decimal(str(timesheet.total_hours or 0)) + hours
        await session.flush()
        return entry

    return _make


@pytest.fixture
def make_approval(session: AsyncSession):
    """Factory for a management-approved team-review record."""

    async def _make(
        timesheet: Timesheet,
        project: Project,
        worked_hours: str | Decimal,
        billable_hours: str | Decimal | None,
        billable_adjustment: str | Decimal = "0",
        status: str = "approved",
    ) -> TimesheetProjectApproval:
        approval = TimesheetProjectApproval(
            approval_id=uuid4(),
            timesheet_id=timesheet.timesheet_id,
            project_id=project.project_id,
            worked_hours=Decimal(str(worked_hours)),
            billable_hours=Decimal(str(billable_hours)) if billable_hours is not None else None,
            billable_adjustment=Decimal(str(billable_adjustment)),
            management_status=status,
            management_approved_at=(
                datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc) if status == "approved" else None
            ),
        )
        session.add(approval)
        await session.flush()
        return approval

    return _make


@pytest.fixture
def log_hours(make_entry):
    """Spread ``total`` hours over consecutive days of a timesheet week."""

    async def _log(
        timesheet: Timesheet,
        project: Project,
        total: str | Decimal,
        per_day: str | Decimal = "8",
        **kwargs,
    ) -> list[TimeEntry]:
        remaining = Decimal(str(total))
        per_day = Decimal(str(per_day))
        entries = []
        day = 0
        while remaining > 0:
            hours = min(per_day, remaining)
            entries.append(
                await make_entry(timesheet, project, hours, day_offset=day % 7, **kwargs)
            )
            remaining -= hours
            day += 1
        return entries

    return _log
