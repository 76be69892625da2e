"""Time entry writes with explicit classification."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.entry_classifier import (
    ExistingTask,
    ProjectEntry,
    TrainingEntry,
    classify,
    entry_columns,
)
from billing_engine.calculators.types import ZERO, quantize
from billing_engine.errors import AuthorizationError, BillingError, NotFoundError, ValidationError
from billing_engine.models import TimeEntry, Timesheet
from billing_engine.models.base import utcnow
from billing_engine.result import Err, Ok, Result
from billing_engine.services.adjustment_ledger import AdjustmentLedger
from billing_engine.services.audit import AuditRecorder, model_state
from billing_engine.services.repositories import DirectoryRepository, TimesheetRepository

logger = logging.getLogger(__name__)


class TimeEntryService:
    """Adds, updates and soft-deletes time entries.

    Every write classifies the raw entry first, requires the parent
    timesheet to be editable, recomputes the timesheet's ``total_hours``
    from its live entries and refreshes adjustments on that timesheet.
    """

    def __init__(
        self,
        session: AsyncSession,
        timesheets: TimesheetRepository,
        directory: DirectoryRepository,
        ledger: AdjustmentLedger,
        audit: AuditRecorder,
    ):
        self.session = session
        self.timesheets = timesheets
        self.directory = directory
        self.ledger = ledger
        self.audit = audit

    async def add_entry(
        self,
        timesheet_id: UUID,
        raw: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> Result[TimeEntry, BillingError]:
        timesheet = await self.timesheets.get(timesheet_id)
        if timesheet is None:
            return Err(NotFoundError("timesheet", timesheet_id))

        prepared = await self._prepare(timesheet, raw)
        if isinstance(prepared, Err):
            return prepared

        async with self.session.begin_nested():
            entry = TimeEntry(timesheet_id=timesheet_id, **prepared.value)
            self.session.add(entry)
            await self.session.flush()
            await self._refresh_total(timesheet)
            self.audit.record(
                entity_type="time_entry",
                entity_id=entry.time_entry_id,
                action="create",
                actor_user_id=actor_id,
                after=model_state(entry),
            )

        await self._recompute(timesheet_id)
        logger.info("Entry %s added to timesheet %s", entry.time_entry_id, timesheet_id)
        return Ok(entry)

    async def update_entry(
        self,
        entry_id: UUID,
        raw: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> Result[TimeEntry, BillingError]:
        entry = await self.timesheets.get_entry(entry_id)
        if entry is None:
            return Err(NotFoundError("time_entry", entry_id))
        timesheet = await self.timesheets.get(entry.timesheet_id)
        if timesheet is None:
            return Err(NotFoundError("timesheet", entry.timesheet_id))

        prepared = await self._prepare(timesheet, raw)
        if isinstance(prepared, Err):
            return prepared

        before = model_state(entry)
        async with self.session.begin_nested():
            for column, value in prepared.value.items():
                setattr(entry, column, value)
            await self.session.flush()
            await self._refresh_total(timesheet)
            self.audit.record(
                entity_type="time_entry",
                entity_id=entry.time_entry_id,
                action="update",
                actor_user_id=actor_id,
                before=before,
                after=model_state(entry),
            )

        await self._recompute(timesheet.timesheet_id)
        return Ok(entry)

    async def delete_entry(
        self, entry_id: UUID, actor_id: UUID | None = None
    ) -> Result[TimeEntry, BillingError]:
        """Soft-delete an entry; rows are never removed."""
        entry = await self.timesheets.get_entry(entry_id)
        if entry is None:
            return Err(NotFoundError("time_entry", entry_id))
        timesheet = await self.timesheets.get(entry.timesheet_id)
        if timesheet is None:
            return Err(NotFoundError("timesheet", entry.timesheet_id))
        if not timesheet.is_editable:
            return Err(self._not_editable(timesheet))

        async with self.session.begin_nested():
            entry.deleted_at = utcnow()
            entry.deleted_by = actor_id
            await self.session.flush()
            await self._refresh_total(timesheet)
            self.audit.record(
                entity_type="time_entry",
                entity_id=entry.time_entry_id,
                action="delete",
                actor_user_id=actor_id,
            )

        await self._recompute(timesheet.timesheet_id)
        logger.info("Entry %s deleted from timesheet %s", entry_id, timesheet.timesheet_id)
        return Ok(entry)

    async def _prepare(
        self, timesheet: Timesheet, raw: Mapping[str, Any]
    ) -> Result[dict[str, Any], BillingError]:
        """Classify and check references; returns the column values."""
        if not timesheet.is_editable:
            return Err(self._not_editable(timesheet))

        classified = classify(raw)
        if isinstance(classified, Err):
            return classified
        normalized = classified.value

        if not (timesheet.week_start_date <= normalized.entry_date <= timesheet.week_end_date):
            return Err(
                ValidationError(
                    "Entry date falls outside the timesheet week",
                    {"entry_date": str(normalized.entry_date)},
                )
            )

        if isinstance(normalized, (ProjectEntry, TrainingEntry)):
            project = await self.directory.get_project(normalized.project_id)
            if project is None:
                return Err(NotFoundError("project", normalized.project_id))
            if isinstance(normalized.task, ExistingTask):
                task = await self.directory.get_task(normalized.task.task_id)
                if task is None:
                    return Err(NotFoundError("task", normalized.task.task_id))
                if task.project_id != project.project_id:
                    return Err(
                        ValidationError(
                            "Task does not belong to the entry's project",
                            {"task_id": str(task.task_id), "project_id": str(project.project_id)},
                        )
                    )

        return Ok(entry_columns(normalized))

    async def _refresh_total(self, timesheet: Timesheet) -> Decimal:
        entries = await self.timesheets.entries_for([timesheet.timesheet_id])
        timesheet.total_hours = quantize(sum((quantize(e.hours) for e in entries), ZERO))
        return timesheet.total_hours

    async def _recompute(self, timesheet_id: UUID) -> None:
        result = await self.ledger.recompute(timesheet_id)
        if isinstance(result, Err):
            logger.warning(
                "Adjustment recompute skipped for timesheet %s: %s",
                timesheet_id,
                result.error.message,
            )

    @staticmethod
    def _not_editable(timesheet: Timesheet) -> AuthorizationError:
        return AuthorizationError(
            f"Timesheet {timesheet.timesheet_id} is '{timesheet.status}' and cannot be edited",
            {"timesheet_id": str(timesheet.timesheet_id), "status": timesheet.status},
        )
