"""Billing aggregation engine - the core read path."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.lock_policy import ProjectLockPolicy
from billing_engine.calculators.periods import DateRange, ViewMode, month_range, resolve_range
from billing_engine.calculators.rate_resolver import RateResolver
from billing_engine.calculators.types import (
    ZERO,
    AggregationFilters,
    AggregationResult,
    BillingSummary,
    ProjectBillingRecord,
    ResourceRow,
    TaskBillingRecord,
    TaskResourceRow,
    TaskRow,
    UserBillingRecord,
    UserProjectRow,
    VerificationInfo,
    non_negative,
    quantize,
)
from billing_engine.calculators.verification import (
    effective_baseline,
    effective_billable,
    merge_verifications,
    summarize_project_verification,
    verification_from_approval,
)
from billing_engine.errors import ValidationError
from billing_engine.models import (
    BILLING_VISIBLE_STATUSES,
    AdjustmentScope,
    BillingAdjustment,
    Client,
    Project,
    Task,
    TimeEntry,
    Timesheet,
    User,
)
from billing_engine.services.repositories import (
    AdjustmentRepository,
    DirectoryRepository,
    TimesheetRepository,
)

logger = logging.getLogger(__name__)

GROUP_BY_AXES = ("project", "task", "user")

CellKey = tuple[UUID, UUID, UUID]  # (project_id, user_id, timesheet_id)


@dataclass
class BillingCell:
    """Figures for one (project, user, timesheet).

    This is the granularity of both the adjustment scope key and the
    team-review record, so precedence is applied here and every parent
    figure is a plain sum of cells.
    """

    project_id: UUID
    user_id: UUID
    timesheet_id: UUID
    entries: list[TimeEntry] = field(default_factory=list)
    worked_hours: Decimal = ZERO
    raw_billable_hours: Decimal = ZERO
    verification: VerificationInfo | None = None
    adjustment_hours: Decimal | None = None
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    hourly_rate: Decimal = ZERO
    amount: Decimal = ZERO

    @property
    def baseline(self) -> Decimal:
        """Billable hours before any ledger adjustment."""
        return effective_baseline(self.raw_billable_hours, self.verification)


@dataclass
class TimesheetTotals:
    """One timesheet's billable total including its timesheet-scope delta."""

    timesheet_id: UUID
    user_id: UUID
    cells: list[BillingCell]
    worked_hours: Decimal
    cells_billable_hours: Decimal
    adjustment_hours: Decimal | None
    billable_hours: Decimal
    other_hours: Decimal

    @property
    def adjustment_effect(self) -> Decimal:
        return self.billable_hours - self.cells_billable_hours


@dataclass
class BillingDataset:
    """Everything one aggregation needs, loaded once per query."""

    date_range: DateRange
    today: date
    timesheets: dict[UUID, Timesheet] = field(default_factory=dict)
    cells: dict[CellKey, BillingCell] = field(default_factory=dict)
    timesheet_adjustments: dict[UUID, BillingAdjustment] = field(default_factory=dict)
    other_hours: dict[UUID, Decimal] = field(default_factory=dict)  # by timesheet
    users: dict[UUID, User] = field(default_factory=dict)
    projects: dict[UUID, Project] = field(default_factory=dict)
    tasks: dict[UUID, Task] = field(default_factory=dict)
    clients: dict[UUID, Client] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.cells and not self.timesheet_adjustments

    def cells_for(
        self,
        user_id: UUID | None = None,
        project_id: UUID | None = None,
        timesheet_id: UUID | None = None,
    ) -> list[BillingCell]:
        return [
            c
            for c in self.cells.values()
            if (user_id is None or c.user_id == user_id)
            and (project_id is None or c.project_id == project_id)
            and (timesheet_id is None or c.timesheet_id == timesheet_id)
        ]

    def timesheet_totals(
        self, timesheet_id: UUID, apply_timesheet_adjustment: bool = True
    ) -> TimesheetTotals:
        """Sum a timesheet's cells and apply its timesheet-scope delta.

        ``billable = max(0, sum(cells) + delta)``; the delta never reaches
        an individual project's figures.
        """
        timesheet = self.timesheets[timesheet_id]
        cells = self.cells_for(timesheet_id=timesheet_id)
        worked = quantize(sum((c.worked_hours for c in cells), ZERO))
        cells_billable = quantize(sum((c.billable_hours for c in cells), ZERO))
        adjustment = self.timesheet_adjustments.get(timesheet_id)
        delta = quantize(adjustment.adjustment_hours) if adjustment is not None else None
        billable = cells_billable
        if delta is not None and apply_timesheet_adjustment:
            billable = non_negative(quantize(cells_billable + delta))
        return TimesheetTotals(
            timesheet_id=timesheet_id,
            user_id=timesheet.user_id,
            cells=cells,
            worked_hours=worked,
            cells_billable_hours=cells_billable,
            adjustment_hours=delta,
            billable_hours=billable,
            other_hours=self.other_hours.get(timesheet_id, ZERO),
        )


def _name_key(name: str | None, ident: UUID | None) -> tuple[str, str]:
    return ((name or "").lower(), str(ident))


def _task_key(entry: TimeEntry) -> tuple[UUID | None, str]:
    if entry.task_id is not None:
        return entry.task_id, ""
    return None, entry.custom_task_description or ""


class AggregationEngine:
    """Computes hierarchical billing figures for a range.

    Pipeline (per query):
    1) Resolve the range from the view (timeline spans the selected projects)
    2) Load billing-visible timesheets, live entries, live adjustments and
       approved team-review records
    3) Build (project, user, timesheet) cells:
       baseline = verified billable if verified, else raw entry billable;
       billable = max(0, baseline + project-scope delta)
    4) Price each cell (project override rate, else user rate)
    5) Roll cells up by straight summation into the requested axis

    Read-only. Each query runs in its own SAVEPOINT. Storage failures and
    timeouts degrade to an empty result with ``error`` set instead of
    raising, and leave the session usable for the next query.
    """

    def __init__(
        self,
        session: AsyncSession,
        directory: DirectoryRepository,
        timesheets: TimesheetRepository,
        adjustments: AdjustmentRepository,
        timeout_seconds: float = 30.0,
        clock: Callable[[], date] = date.today,
    ):
        self.session = session
        self.directory = directory
        self.timesheets = timesheets
        self.adjustments = adjustments
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def aggregate(
        self,
        view: ViewMode | str = ViewMode.MONTHLY,
        start: date | None = None,
        end: date | None = None,
        filters: AggregationFilters | None = None,
        group_by: str = "project",
        timeout: float | None = None,
    ) -> AggregationResult:
        """Aggregate billing figures.

        Raises:
            ValidationError: For an unknown view or axis, or an inverted
                range. Nothing else escapes.
        """
        try:
            view = ViewMode(view)
        except ValueError:
            raise ValidationError(f"Invalid view '{view}'", {"view": str(view)})
        if group_by not in GROUP_BY_AXES:
            raise ValidationError(f"Invalid groupBy '{group_by}'", {"group_by": group_by})
        if start is not None and end is not None and end < start:
            raise ValidationError(
                f"Range end {end} is before start {start}",
                {"start_date": str(start), "end_date": str(end)},
            )

        filters = filters or AggregationFilters()
        timeout = self.timeout_seconds if timeout is None else timeout

        try:
            return await asyncio.wait_for(
                self._read(view, start, end, filters, group_by), timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Aggregation timed out after %ss (view=%s)", timeout, view.value)
            await self.recover_session()
            return self._degraded(
                view, start, end, group_by, f"Aggregation timed out after {timeout}s"
            )
        except SQLAlchemyError as exc:
            logger.exception("Aggregation failed for view=%s", view.value)
            await self.recover_session()
            return self._degraded(
                view, start, end, group_by, f"Billing data unavailable: {exc.__class__.__name__}"
            )

    async def recover_session(self) -> None:
        """Roll back a transaction that a cancelled or failed read left unusable."""
        transaction = self.session.get_transaction()
        if transaction is not None and not transaction.is_active:
            logger.warning("Rolling back transaction invalidated by an aborted read")
            await self.session.rollback()

    async def _read(
        self,
        view: ViewMode,
        start: date | None,
        end: date | None,
        filters: AggregationFilters,
        group_by: str,
    ) -> AggregationResult:
        async with self.session.begin_nested():
            return await self._aggregate(view, start, end, filters, group_by)

    def _degraded(
        self,
        view: ViewMode,
        start: date | None,
        end: date | None,
        group_by: str,
        error: str,
    ) -> AggregationResult:
        if start is not None and end is not None:
            date_range = DateRange(start, end)
        else:
            date_range = month_range(self.clock())
        return AggregationResult(
            date_range=date_range,
            view=view,
            group_by=group_by,
            error=error,
            failed=True,
        )

    async def _aggregate(
        self,
        view: ViewMode,
        start: date | None,
        end: date | None,
        filters: AggregationFilters,
        group_by: str,
    ) -> AggregationResult:
        today = self.clock()
        selected = await self.directory.select_projects(filters.project_ids, filters.client_ids)
        date_range = resolve_range(
            view,
            today,
            start,
            end,
            [(p.start_date, p.end_date) for p in selected],
        )

        dataset = await self.collect(date_range, filters, selected_projects=selected)
        result = AggregationResult(date_range=date_range, view=view, group_by=group_by)

        if dataset.is_empty:
            logger.warning("No billing data for %s (view=%s)", date_range.label, view.value)
            result.error = f"No billable hours found between {date_range.start} and {date_range.end}"
            return result

        if group_by == "task":
            result.tasks = self.build_task_records(dataset)
        elif group_by == "user":
            result.users = self.build_user_records(
                dataset, apply_timesheet_adjustments=not filters.restricts_projects
            )
        else:
            result.projects = self.build_project_records(dataset)

        result.summary = summarize(result.rows)
        return result

    # ===== Loading =====

    async def collect(
        self,
        date_range: DateRange,
        filters: AggregationFilters | None = None,
        selected_projects: list[Project] | None = None,
        statuses: Iterable[str] = BILLING_VISIBLE_STATUSES,
    ) -> BillingDataset:
        """Load and price every cell in the range.

        Storage errors propagate; ``aggregate`` is the degrading wrapper.
        """
        filters = filters or AggregationFilters()
        dataset = BillingDataset(date_range=date_range, today=self.clock())

        timesheets = await self.timesheets.list_in_range(
            date_range.start, date_range.end, statuses, filters.user_ids
        )
        users = await self.directory.users_by_id(
            [t.user_id for t in timesheets], filters.roles
        )
        timesheets = [t for t in timesheets if t.user_id in users]
        if not timesheets:
            return dataset

        dataset.users = users
        dataset.timesheets = {t.timesheet_id: t for t in timesheets}
        timesheet_ids = list(dataset.timesheets)

        allowed_projects: set[UUID] | None = None
        if filters.project_ids or filters.client_ids:
            if selected_projects is None:
                selected_projects = await self.directory.select_projects(
                    filters.project_ids, filters.client_ids
                )
            allowed_projects = {p.project_id for p in selected_projects}

        def project_allowed(project_id: UUID | None) -> bool:
            if project_id is None:
                return False
            return allowed_projects is None or project_id in allowed_projects

        entries = await self.timesheets.entries_for(timesheet_ids)
        adjustments = await self.adjustments.list_for(timesheet_ids)
        approvals = await self.timesheets.verified_approvals(timesheet_ids)

        project_entries = [e for e in entries if project_allowed(e.project_id)]
        project_adjustments = {
            (a.timesheet_id, a.project_id): a
            for a in adjustments
            if a.scope == AdjustmentScope.PROJECT.value and project_allowed(a.project_id)
        }
        approvals_by_cell = {
            (a.timesheet_id, a.project_id): a
            for a in approvals
            if project_allowed(a.project_id)
        }

        project_ids = (
            {e.project_id for e in project_entries}
            | {pid for _, pid in project_adjustments}
            | {pid for _, pid in approvals_by_cell}
        )
        dataset.projects = await self.directory.projects_by_id(project_ids)
        dataset.tasks = await self.directory.tasks_by_id(
            [e.task_id for e in project_entries if e.task_id is not None]
        )
        dataset.clients = await self.directory.clients_by_id(
            [p.client_id for p in dataset.projects.values() if p.client_id is not None]
        )

        # Cells from entries, adjustments and verification records alike
        for entry in project_entries:
            cell = self._cell(dataset, entry.project_id, entry.timesheet_id)
            cell.entries.append(entry)
            cell.worked_hours += quantize(entry.hours)
            cell.raw_billable_hours += quantize(entry.billable_hours)
        for timesheet_id, project_id in list(project_adjustments) + list(approvals_by_cell):
            self._cell(dataset, project_id, timesheet_id)

        if filters.search:
            self._apply_search(dataset, filters.search)

        rates = RateResolver(dataset.users, dataset.projects, dataset.tasks)
        for cell in dataset.cells.values():
            cell.verification = verification_from_approval(
                approvals_by_cell.get((cell.timesheet_id, cell.project_id))
            )
            adjustment = project_adjustments.get((cell.timesheet_id, cell.project_id))
            cell.adjustment_hours = (
                quantize(adjustment.adjustment_hours) if adjustment is not None else None
            )
            cell.billable_hours = effective_billable(
                cell.raw_billable_hours, cell.verification, cell.adjustment_hours
            )
            cell.non_billable_hours = non_negative(cell.worked_hours - cell.billable_hours)
            cell.hourly_rate = rates.resolve_for_cell(cell.project_id, cell.user_id)
            cell.amount = quantize(cell.billable_hours * cell.hourly_rate)

        if not filters.restricts_projects:
            dataset.timesheet_adjustments = {
                a.timesheet_id: a
                for a in adjustments
                if a.scope == AdjustmentScope.TIMESHEET.value
            }
            for entry in entries:
                if entry.project_id is None:
                    dataset.other_hours[entry.timesheet_id] = quantize(
                        dataset.other_hours.get(entry.timesheet_id, ZERO) + entry.hours
                    )

        return dataset

    def _cell(self, dataset: BillingDataset, project_id: UUID, timesheet_id: UUID) -> BillingCell:
        user_id = dataset.timesheets[timesheet_id].user_id
        key = (project_id, user_id, timesheet_id)
        cell = dataset.cells.get(key)
        if cell is None:
            cell = BillingCell(project_id=project_id, user_id=user_id, timesheet_id=timesheet_id)
            dataset.cells[key] = cell
        return cell

    def _apply_search(self, dataset: BillingDataset, search: str) -> None:
        """Keep cells whose project, client, user or task name matches."""
        term = search.strip().lower()
        if not term:
            return

        def matches(cell: BillingCell) -> bool:
            project = dataset.projects.get(cell.project_id)
            user = dataset.users.get(cell.user_id)
            names = [
                project.name if project else None,
                user.full_name if user else None,
            ]
            if project is not None and project.client_id in dataset.clients:
                names.append(dataset.clients[project.client_id].name)
            for entry in cell.entries:
                task = dataset.tasks.get(entry.task_id) if entry.task_id else None
                names.append(task.name if task else entry.custom_task_description)
            return any(term in name.lower() for name in names if name)

        dataset.cells = {k: c for k, c in dataset.cells.items() if matches(c)}

    # ===== Roll-ups =====

    def build_project_records(self, dataset: BillingDataset) -> list[ProjectBillingRecord]:
        """Project -> resource -> task hierarchy."""
        by_project: dict[UUID, dict[UUID, list[BillingCell]]] = {}
        for cell in dataset.cells.values():
            by_project.setdefault(cell.project_id, {}).setdefault(cell.user_id, []).append(cell)

        rates = RateResolver(dataset.users, dataset.projects, dataset.tasks)
        records: list[ProjectBillingRecord] = []
        for project_id, by_user in by_project.items():
            project = dataset.projects[project_id]
            client = dataset.clients.get(project.client_id) if project.client_id else None
            record = ProjectBillingRecord(
                project_id=project_id,
                project_name=project.name,
                client_id=project.client_id,
                client_name=client.name if client else None,
                start_date=project.start_date,
                end_date=project.end_date,
                is_locked=ProjectLockPolicy.is_locked(project.end_date, dataset.today),
            )
            verifications: dict[UUID, VerificationInfo | None] = {}
            for user_id, cells in by_user.items():
                row = self._resource_row(dataset, rates, user_id, project_id, cells)
                verifications[user_id] = row.verification
                record.resources.append(row)
                _accumulate(record, row)
            record.resources.sort(key=lambda r: _name_key(r.user_name, r.user_id))
            record.verification = summarize_project_verification(verifications)
            records.append(record)

        records.sort(key=lambda r: _name_key(r.project_name, r.project_id))
        return records

    def _resource_row(
        self,
        dataset: BillingDataset,
        rates: RateResolver,
        user_id: UUID,
        project_id: UUID,
        cells: list[BillingCell],
    ) -> ResourceRow:
        user = dataset.users[user_id]
        row = ResourceRow(
            user_id=user_id,
            user_name=user.full_name,
            role=user.role,
            hourly_rate=rates.resolve_for_cell(project_id, user_id),
            verification=merge_verifications(c.verification for c in cells),
        )
        tasks: dict[tuple[UUID | None, str], TaskRow] = {}
        for cell in cells:
            _accumulate(row, cell)
            if cell.adjustment_hours is not None:
                row.adjustment_hours = quantize(row.adjustment_hours + cell.adjustment_hours)
            for entry in cell.entries:
                key = _task_key(entry)
                task_row = tasks.get(key)
                if task_row is None:
                    task_row = TaskRow(task_id=key[0], task_name=self._task_name(dataset, entry))
                    tasks[key] = task_row
                _accumulate_entry(task_row, entry, rates.resolve_for_entry(entry, user_id))
        row.tasks = sorted(tasks.values(), key=lambda t: _name_key(t.task_name, t.task_id))
        return row

    def build_task_records(self, dataset: BillingDataset) -> list[TaskBillingRecord]:
        """Task -> resource hierarchy from raw entry figures."""
        rates = RateResolver(dataset.users, dataset.projects, dataset.tasks)
        records: dict[tuple[UUID, UUID | None, str], TaskBillingRecord] = {}
        resources: dict[tuple[UUID, UUID | None, str], dict[UUID, TaskResourceRow]] = {}

        for cell in dataset.cells.values():
            project = dataset.projects[cell.project_id]
            user = dataset.users[cell.user_id]
            for entry in cell.entries:
                key = (cell.project_id, *_task_key(entry))
                record = records.get(key)
                if record is None:
                    record = TaskBillingRecord(
                        task_id=entry.task_id,
                        task_name=self._task_name(dataset, entry),
                        project_id=cell.project_id,
                        project_name=project.name,
                    )
                    records[key] = record
                    resources[key] = {}
                row = resources[key].get(cell.user_id)
                if row is None:
                    row = TaskResourceRow(user_id=cell.user_id, user_name=user.full_name)
                    resources[key][cell.user_id] = row
                _accumulate_entry(row, entry, rates.resolve_for_entry(entry, cell.user_id))

        for key, record in records.items():
            record.resources = sorted(
                resources[key].values(), key=lambda r: _name_key(r.user_name, r.user_id)
            )
            for row in record.resources:
                _accumulate(record, row)

        return sorted(
            records.values(),
            key=lambda r: (_name_key(r.project_name, r.project_id), _name_key(r.task_name, r.task_id)),
        )

    def build_user_records(
        self, dataset: BillingDataset, apply_timesheet_adjustments: bool = True
    ) -> list[UserBillingRecord]:
        """User -> project hierarchy plus the timesheet-scope correction."""
        by_user: dict[UUID, list[UUID]] = {}
        for timesheet in dataset.timesheets.values():
            by_user.setdefault(timesheet.user_id, []).append(timesheet.timesheet_id)

        records: list[UserBillingRecord] = []
        for user_id, timesheet_ids in by_user.items():
            totals = [
                dataset.timesheet_totals(ts_id, apply_timesheet_adjustments)
                for ts_id in timesheet_ids
            ]
            cells = [c for t in totals for c in t.cells]
            has_timesheet_adjustment = any(t.adjustment_hours is not None for t in totals)
            if not cells and not (apply_timesheet_adjustments and has_timesheet_adjustment):
                continue

            user = dataset.users[user_id]
            record = UserBillingRecord(
                user_id=user_id,
                user_name=user.full_name,
                role=user.role,
                hourly_rate=quantize(user.hourly_rate),
            )

            by_project: dict[UUID, list[BillingCell]] = {}
            for cell in cells:
                by_project.setdefault(cell.project_id, []).append(cell)
            for project_id, project_cells in by_project.items():
                project = dataset.projects[project_id]
                row = UserProjectRow(
                    project_id=project_id,
                    project_name=project.name,
                    is_locked=ProjectLockPolicy.is_locked(project.end_date, dataset.today),
                    verification=merge_verifications(c.verification for c in project_cells),
                )
                for cell in project_cells:
                    _accumulate(row, cell)
                    if cell.adjustment_hours is not None:
                        row.adjustment_hours = quantize(row.adjustment_hours + cell.adjustment_hours)
                record.projects.append(row)
                _accumulate(record, row)
            record.projects.sort(key=lambda r: _name_key(r.project_name, r.project_id))

            if apply_timesheet_adjustments:
                for t in totals:
                    if t.adjustment_hours is None:
                        continue
                    effect = t.adjustment_effect
                    record.timesheet_adjustment_hours = quantize(
                        record.timesheet_adjustment_hours + t.adjustment_hours
                    )
                    record.timesheet_adjustment_effect = quantize(
                        record.timesheet_adjustment_effect + effect
                    )
                    record.billable_hours = quantize(record.billable_hours + effect)
                    record.amount = quantize(record.amount + effect * record.hourly_rate)
                record.non_billable_hours = non_negative(
                    record.worked_hours - record.billable_hours
                )

            record.other_hours = quantize(sum((t.other_hours for t in totals), ZERO))
            records.append(record)

        records.sort(key=lambda r: _name_key(r.user_name, r.user_id))
        return records

    @staticmethod
    def _task_name(dataset: BillingDataset, entry: TimeEntry) -> str:
        if entry.task_id is not None and entry.task_id in dataset.tasks:
            return dataset.tasks[entry.task_id].name
        return entry.custom_task_description or "Unassigned"


def _accumulate(target, source) -> None:
    """Add ``source``'s hour and money figures into ``target``."""
    target.worked_hours = quantize(target.worked_hours + source.worked_hours)
    target.billable_hours = quantize(target.billable_hours + source.billable_hours)
    target.non_billable_hours = quantize(target.non_billable_hours + source.non_billable_hours)
    target.amount = quantize(target.amount + source.amount)


def _accumulate_entry(target, entry: TimeEntry, rate: Decimal) -> None:
    hours = quantize(entry.hours)
    billable = quantize(entry.billable_hours)
    target.worked_hours = quantize(target.worked_hours + hours)
    target.billable_hours = quantize(target.billable_hours + billable)
    target.non_billable_hours = quantize(
        target.non_billable_hours + non_negative(hours - billable)
    )
    target.amount = quantize(target.amount + billable * rate)


def summarize(rows: Iterable) -> BillingSummary:
    """Totals across top-level rows."""
    summary = BillingSummary()
    for row in rows:
        summary.row_count += 1
        summary.total_hours = quantize(summary.total_hours + row.worked_hours)
        summary.billable_hours = quantize(summary.billable_hours + row.billable_hours)
        summary.non_billable_hours = quantize(summary.non_billable_hours + row.non_billable_hours)
        summary.total_amount = quantize(summary.total_amount + row.amount)
    return summary
