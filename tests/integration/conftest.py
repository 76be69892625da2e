"""Integration test fixtures: the full app over an in-memory database."""

from collections.abc import AsyncGenerator
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.api.app import create_app
from billing_engine.config import Settings
from billing_engine.models import Client, Project, Task, TimeEntry, Timesheet, User
from billing_engine.services import BillingServices

TODAY = date(2024, 3, 20)

# Fixed IDs for seeded rows
ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000ff")
ALICE_ID = UUID("00000000-0000-0000-0000-000000000001")
BOB_ID = UUID("00000000-0000-0000-0000-000000000002")
CLIENT_ID = UUID("00000000-0000-0000-0000-000000000010")
APOLLO_ID = UUID("00000000-0000-0000-0000-000000000100")
LEGACY_ID = UUID("00000000-0000-0000-0000-000000000101")
DESIGN_TASK_ID = UUID("00000000-0000-0000-0000-000000001000")
FROZEN_TIMESHEET_ID = UUID("00000000-0000-0000-0000-000000010000")
DRAFT_TIMESHEET_ID = UUID("00000000-0000-0000-0000-000000010001")
LEGACY_TIMESHEET_ID = UUID("00000000-0000-0000-0000-000000010002")
BOB_TIMESHEET_ID = UUID("00000000-0000-0000-0000-000000010003")

FROZEN_WEEK = date(2024, 3, 4)
DRAFT_WEEK = date(2024, 3, 11)
LEGACY_WEEK = date(2024, 2, 19)


def _settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        auto_create_schema=True,
        adjustment_max_retries=3,
        aggregation_timeout_seconds=5.0,
    )


def _timesheet(timesheet_id: UUID, user_id: UUID, week_start: date, status: str) -> Timesheet:
    return Timesheet(
        timesheet_id=timesheet_id,
        user_id=user_id,
        week_start_date=week_start,
        week_end_date=week_start + timedelta(days=6),
        status=status,
    )


def _entries(timesheet: Timesheet, project_id: UUID, days: int, task_id: UUID | None = None):
    entries = []
    for offset in range(days):
        entries.append(
            TimeEntry(
                time_entry_id=uuid4(),
                timesheet_id=timesheet.timesheet_id,
                entry_category="project",
                entry_date=timesheet.week_start_date + timedelta(days=offset),
                hours=Decimal("8.00"),
                is_billable=True,
                billable_hours=Decimal("8.00"),
                project_id=project_id,
                task_id=task_id,
                custom_task_description=None if task_id else "General work",
            )
        )
    timesheet.total_hours = Decimal(8 * days)
    return entries


async def _seed(session: AsyncSession) -> None:
    session.add_all(
        [
            User(
                user_id=ALICE_ID,
                full_name="Alice Anders",
                email="alice@example.com",
                role="employee",
                hourly_rate=Decimal("100.00"),
            ),
            User(
                user_id=BOB_ID,
                full_name="Bob Baker",
                email="bob@example.com",
                role="lead",
                hourly_rate=Decimal("80.00"),
            ),
            Client(client_id=CLIENT_ID, name="Acme Corp"),
        ]
    )
    await session.flush()
    session.add_all(
        [
            Project(
                project_id=APOLLO_ID,
                client_id=CLIENT_ID,
                name="Apollo",
                start_date=date(2024, 1, 1),
                end_date=date(2024, 12, 31),
            ),
            Project(
                project_id=LEGACY_ID,
                client_id=None,
                name="Legacy",
                start_date=date(2023, 6, 1),
                end_date=date(2024, 2, 29),
                status="completed",
            ),
        ]
    )
    await session.flush()
    session.add(Task(task_id=DESIGN_TASK_ID, project_id=APOLLO_ID, name="Design"))

    frozen = _timesheet(FROZEN_TIMESHEET_ID, ALICE_ID, FROZEN_WEEK, "frozen")
    draft = _timesheet(DRAFT_TIMESHEET_ID, ALICE_ID, DRAFT_WEEK, "draft")
    legacy = _timesheet(LEGACY_TIMESHEET_ID, ALICE_ID, LEGACY_WEEK, "submitted")
    bob = _timesheet(BOB_TIMESHEET_ID, BOB_ID, FROZEN_WEEK, "manager_approved")
    session.add_all([frozen, draft, legacy, bob])
    await session.flush()

    # Alice: 40h on Apollo design; Bob: 16h on Apollo; Alice: 16h on Legacy
    session.add_all(_entries(frozen, APOLLO_ID, 5, task_id=DESIGN_TASK_ID))
    session.add_all(_entries(bob, APOLLO_ID, 2))
    session.add_all(_entries(legacy, LEGACY_ID, 2))
    await session.flush()


@pytest_asyncio.fixture
async def app() -> AsyncGenerator[FastAPI, None]:
    """App with its lifespan running, a seeded schema and a fixed clock."""
    app = create_app(_settings())
    async with app.router.lifespan_context(app):
        app.state.services = BillingServices(
            adjustment_max_retries=3,
            aggregation_timeout_seconds=5.0,
            clock=lambda: TODAY,
        )
        async with app.state.session_factory() as session:
            await _seed(session)
            await session.commit()
        yield app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client talking to the app in-process."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def actor_headers() -> dict[str, str]:
    return {"X-Actor-ID": str(ACTOR_ID)}
