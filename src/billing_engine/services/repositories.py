"""Repositories for billing reads and writes.

Soft-deleted rows are excluded explicitly: every read path applies
``not_deleted(Model)`` itself. Nothing is filtered behind the caller's back.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models import (
    BillingAdjustment,
    BillingSnapshot,
    Client,
    Project,
    Task,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    User,
)


def not_deleted(model: Any):
    """Predicate selecting live (not soft-deleted) rows of ``model``."""
    return model.deleted_at.is_(None)


def _ids(values: Iterable[UUID]) -> list[UUID]:
    return list(dict.fromkeys(values))


class DirectoryRepository:
    """Read access to users, clients, projects and tasks."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user(self, user_id: UUID) -> User | None:
        return await self.session.get(User, user_id)

    async def get_project(self, project_id: UUID) -> Project | None:
        return await self.session.get(Project, project_id)

    async def get_task(self, task_id: UUID) -> Task | None:
        return await self.session.get(Task, task_id)

    async def users_by_id(
        self,
        user_ids: Iterable[UUID],
        roles: Iterable[str] = (),
    ) -> dict[UUID, User]:
        ids = _ids(user_ids)
        if not ids:
            return {}
        query = select(User).where(User.user_id.in_(ids))
        roles = list(roles)
        if roles:
            query = query.where(User.role.in_(roles))
        result = await self.session.execute(query)
        return {u.user_id: u for u in result.scalars().all()}

    async def projects_by_id(self, project_ids: Iterable[UUID]) -> dict[UUID, Project]:
        ids = _ids(project_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Project).where(Project.project_id.in_(ids)))
        return {p.project_id: p for p in result.scalars().all()}

    async def tasks_by_id(self, task_ids: Iterable[UUID]) -> dict[UUID, Task]:
        ids = _ids(task_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Task).where(Task.task_id.in_(ids)))
        return {t.task_id: t for t in result.scalars().all()}

    async def clients_by_id(self, client_ids: Iterable[UUID]) -> dict[UUID, Client]:
        ids = _ids(client_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(Client).where(Client.client_id.in_(ids)))
        return {c.client_id: c for c in result.scalars().all()}

    async def select_projects(
        self,
        project_ids: Iterable[UUID] = (),
        client_ids: Iterable[UUID] = (),
    ) -> list[Project]:
        """Projects matching either id list; empty when neither is given."""
        project_ids = _ids(project_ids)
        client_ids = _ids(client_ids)
        conditions = []
        if project_ids:
            conditions.append(Project.project_id.in_(project_ids))
        if client_ids:
            conditions.append(Project.client_id.in_(client_ids))
        if not conditions:
            return []
        result = await self.session.execute(
            select(Project).where(or_(*conditions)).order_by(Project.name)
        )
        return list(result.scalars().all())


class TimesheetRepository:
    """Timesheets, their live entries and team-review records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, timesheet_id: UUID) -> Timesheet | None:
        result = await self.session.execute(
            select(Timesheet).where(
                Timesheet.timesheet_id == timesheet_id,
                not_deleted(Timesheet),
            )
        )
        return result.scalar_one_or_none()

    async def list_in_range(
        self,
        start: date,
        end: date,
        statuses: Iterable[str],
        user_ids: Iterable[UUID] = (),
    ) -> list[Timesheet]:
        """Timesheets whose week starts within ``start..end``."""
        query = select(Timesheet).where(
            not_deleted(Timesheet),
            Timesheet.week_start_date >= start,
            Timesheet.week_start_date <= end,
            Timesheet.status.in_(list(statuses)),
        )
        user_ids = _ids(user_ids)
        if user_ids:
            query = query.where(Timesheet.user_id.in_(user_ids))
        result = await self.session.execute(
            query.order_by(Timesheet.week_start_date, Timesheet.timesheet_id)
        )
        return list(result.scalars().all())

    async def list_for_week(self, week_start: date, statuses: Iterable[str]) -> list[Timesheet]:
        result = await self.session.execute(
            select(Timesheet)
            .where(
                not_deleted(Timesheet),
                Timesheet.week_start_date == week_start,
                Timesheet.status.in_(list(statuses)),
            )
            .order_by(Timesheet.timesheet_id)
        )
        return list(result.scalars().all())

    async def get_entry(self, entry_id: UUID) -> TimeEntry | None:
        result = await self.session.execute(
            select(TimeEntry).where(
                TimeEntry.time_entry_id == entry_id,
                not_deleted(TimeEntry),
            )
        )
        return result.scalar_one_or_none()

    async def entries_for(self, timesheet_ids: Iterable[UUID]) -> list[TimeEntry]:
        ids = _ids(timesheet_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(TimeEntry)
            .where(TimeEntry.timesheet_id.in_(ids), not_deleted(TimeEntry))
            .order_by(TimeEntry.entry_date, TimeEntry.time_entry_id)
        )
        return list(result.scalars().all())

    async def verified_approvals(
        self, timesheet_ids: Iterable[UUID]
    ) -> list[TimesheetProjectApproval]:
        ids = _ids(timesheet_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(TimesheetProjectApproval).where(
                TimesheetProjectApproval.timesheet_id.in_(ids),
                TimesheetProjectApproval.management_status == "approved",
            )
        )
        return list(result.scalars().all())


class AdjustmentRepository:
    """Live billing adjustments."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, adjustment_id: UUID) -> BillingAdjustment | None:
        result = await self.session.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.adjustment_id == adjustment_id,
                not_deleted(BillingAdjustment),
            )
        )
        return result.scalar_one_or_none()

    async def find_live(self, scope_key: str) -> BillingAdjustment | None:
        result = await self.session.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.scope_key == scope_key,
                not_deleted(BillingAdjustment),
            )
        )
        return result.scalar_one_or_none()

    async def list_for(self, timesheet_ids: Iterable[UUID]) -> list[BillingAdjustment]:
        ids = _ids(timesheet_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(BillingAdjustment).where(
                BillingAdjustment.timesheet_id.in_(ids),
                not_deleted(BillingAdjustment),
            )
        )
        return list(result.scalars().all())


class SnapshotRepository:
    """Billing snapshots. Hard-deleted rows are never returned."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _visible(self, include_deleted: bool):
        query = select(BillingSnapshot).where(BillingSnapshot.is_hard_deleted.is_(False))
        if not include_deleted:
            query = query.where(not_deleted(BillingSnapshot))
        return query

    async def get(self, snapshot_id: UUID, include_deleted: bool = False) -> BillingSnapshot | None:
        result = await self.session.execute(
            self._visible(include_deleted).where(BillingSnapshot.snapshot_id == snapshot_id)
        )
        return result.scalar_one_or_none()

    async def find_live(self, timesheet_id: UUID, week_start: date) -> BillingSnapshot | None:
        result = await self.session.execute(
            self._visible(include_deleted=False).where(
                BillingSnapshot.timesheet_id == timesheet_id,
                BillingSnapshot.week_start_date == week_start,
            )
        )
        return result.scalar_one_or_none()

    async def list_visible(
        self,
        include_deleted: bool = False,
        week_start: date | None = None,
    ) -> list[BillingSnapshot]:
        query = self._visible(include_deleted)
        if week_start is not None:
            query = query.where(BillingSnapshot.week_start_date == week_start)
        result = await self.session.execute(
            query.order_by(BillingSnapshot.week_start_date.desc(), BillingSnapshot.created_at)
        )
        return list(result.scalars().all())
