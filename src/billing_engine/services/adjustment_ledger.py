"""Adjustment ledger: persistent billable-hour corrections keyed by scope."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.adjustments import (
    AdjustmentTarget,
    derive_total_billable,
    normalize_scope,
    plan_project_targets,
)
from billing_engine.calculators.lock_policy import ProjectLockPolicy
from billing_engine.calculators.periods import DateRange
from billing_engine.calculators.types import ZERO, AggregationFilters, quantize
from billing_engine.errors import (
    BillingError,
    ConflictError,
    NotFoundError,
    ProjectLockedError,
    ValidationError,
)
from billing_engine.models import (
    AdjustmentScope,
    BillingAdjustment,
    Timesheet,
    TimesheetStatus,
    make_scope_key,
)
from billing_engine.models.base import utcnow
from billing_engine.result import Err, Ok, Result
from billing_engine.services.aggregation import AggregationEngine
from billing_engine.services.audit import AuditRecorder, model_state
from billing_engine.services.repositories import (
    AdjustmentRepository,
    DirectoryRepository,
    TimesheetRepository,
)

logger = logging.getLogger(__name__)

ALL_STATUSES = frozenset(s.value for s in TimesheetStatus)


@dataclass
class AdjustmentRequest:
    """Input for one ledger write."""

    timesheet_id: UUID
    scope: AdjustmentScope | str
    billing_period_start: date
    billing_period_end: date
    total_worked_hours: Decimal
    adjustment_hours: Decimal
    reason: str | None = None
    project_id: UUID | None = None
    task_id: UUID | None = None


class AdjustmentLedger:
    """Owns creation, update and deletion of billing adjustments.

    Key invariants:
    1. At most one live adjustment per (timesheet, scope, project) key,
       enforced by a partial unique index; a writer that loses the insert
       race retries as an update
    2. ``total_billable_hours = max(0, total_worked_hours + adjustment_hours)``
       is recomputed on every write
    3. Mirror fields are written once and never overwritten
    4. Writes against locked projects are rejected
    5. Every write runs in a SAVEPOINT; a failed write leaves nothing behind
    """

    def __init__(
        self,
        session: AsyncSession,
        adjustments: AdjustmentRepository,
        timesheets: TimesheetRepository,
        directory: DirectoryRepository,
        engine: AggregationEngine,
        audit: AuditRecorder,
        max_retries: int = 3,
        clock: Callable[[], date] = date.today,
    ):
        self.session = session
        self.adjustments = adjustments
        self.timesheets = timesheets
        self.directory = directory
        self.engine = engine
        self.audit = audit
        self.max_retries = max(1, max_retries)
        self.clock = clock

    # ===== Upsert =====

    async def upsert_adjustment(
        self,
        request: AdjustmentRequest,
        actor_id: UUID,
        adjustment_id: UUID | None = None,
    ) -> Result[BillingAdjustment, BillingError]:
        """Create or update the live adjustment for the request's scope key.

        With ``adjustment_id`` the given adjustment is updated in place,
        which may move it to a different scope (switching to timesheet scope
        clears its project).

        Returns:
            ``Ok(adjustment)`` or ``Err`` carrying ValidationError,
            NotFoundError, ProjectLockedError or ConflictError.
        """
        normalized = normalize_scope(request.scope, request.project_id, request.task_id)
        if isinstance(normalized, Err):
            return normalized
        target = normalized.value

        if request.billing_period_end < request.billing_period_start:
            return Err(
                ValidationError(
                    "Billing period end is before its start",
                    {
                        "billing_period_start": str(request.billing_period_start),
                        "billing_period_end": str(request.billing_period_end),
                    },
                )
            )
        total_worked = quantize(request.total_worked_hours)
        if total_worked < ZERO:
            return Err(
                ValidationError(
                    "Total worked hours must not be negative",
                    {"total_worked_hours": str(total_worked)},
                )
            )
        delta = quantize(request.adjustment_hours)

        timesheet = await self.timesheets.get(request.timesheet_id)
        if timesheet is None:
            return Err(NotFoundError("timesheet", request.timesheet_id))

        checked = await self._check_target(target)
        if isinstance(checked, Err):
            return checked

        if adjustment_id is not None:
            current = await self.adjustments.get(adjustment_id)
            if current is None:
                return Err(NotFoundError("billing_adjustment", adjustment_id))
            if current.timesheet_id != timesheet.timesheet_id:
                return Err(
                    ValidationError(
                        "An adjustment cannot move to another timesheet",
                        {"adjustment_id": str(adjustment_id)},
                    )
                )
            if current.project_id is not None and current.project_id != target.project_id:
                # Moving out of a project is a write against that project
                locked = await self._check_lock(current.project_id)
                if isinstance(locked, Err):
                    return locked

        scope_key = make_scope_key(timesheet.timesheet_id, target.scope.value, target.project_id)

        for attempt in range(1, self.max_retries + 1):
            try:
                async with self.session.begin_nested():
                    written = await self._write(
                        timesheet,
                        target,
                        scope_key,
                        request,
                        total_worked,
                        delta,
                        actor_id,
                        adjustment_id,
                    )
                    if isinstance(written, Err):
                        return written
                    adjustment, action, before = written.value
                    await self.session.flush()
                    self.audit.record(
                        entity_type="billing_adjustment",
                        entity_id=adjustment.adjustment_id,
                        action=action,
                        actor_user_id=actor_id,
                        before=before,
                        after=model_state(adjustment),
                    )
            except IntegrityError:
                logger.warning(
                    "Scope key %s written concurrently, retrying (attempt %d/%d)",
                    scope_key,
                    attempt,
                    self.max_retries,
                )
                continue

            logger.info(
                "Adjustment %s %sd for %s: worked=%s delta=%s total=%s",
                adjustment.adjustment_id,
                action,
                scope_key,
                adjustment.total_worked_hours,
                adjustment.adjustment_hours,
                adjustment.total_billable_hours,
            )
            return Ok(adjustment)

        return Err(
            ConflictError(
                f"Could not write adjustment for {scope_key} after {self.max_retries} attempts",
                {"scope_key": scope_key, "attempts": self.max_retries},
            )
        )

    async def _write(
        self,
        timesheet: Timesheet,
        target: AdjustmentTarget,
        scope_key: str,
        request: AdjustmentRequest,
        total_worked: Decimal,
        delta: Decimal,
        actor_id: UUID,
        adjustment_id: UUID | None,
    ) -> Result[tuple[BillingAdjustment, str, dict | None], BillingError]:
        """Lookup-then-write inside the caller's savepoint."""
        holder = await self.adjustments.find_live(scope_key)

        if adjustment_id is not None:
            adjustment = await self.adjustments.get(adjustment_id)
            if adjustment is None:
                return Err(NotFoundError("billing_adjustment", adjustment_id))
            if holder is not None and holder.adjustment_id != adjustment_id:
                return Err(
                    ConflictError(
                        f"Another live adjustment already holds {scope_key}",
                        {"scope_key": scope_key, "holder_id": str(holder.adjustment_id)},
                    )
                )
        else:
            adjustment = holder

        if adjustment is None:
            adjustment = BillingAdjustment(
                timesheet_id=timesheet.timesheet_id,
                user_id=timesheet.user_id,
            )
            action, before = "create", None
            self.session.add(adjustment)
        else:
            action, before = "update", model_state(adjustment)

        total_billable = derive_total_billable(total_worked, delta)
        adjustment.scope = target.scope.value
        adjustment.project_id = target.project_id
        adjustment.task_id = target.task_id
        adjustment.scope_key = scope_key
        adjustment.billing_period_start = request.billing_period_start
        adjustment.billing_period_end = request.billing_period_end
        adjustment.total_worked_hours = total_worked
        adjustment.adjustment_hours = delta
        adjustment.total_billable_hours = total_billable
        adjustment.reason = request.reason
        adjustment.adjusted_by = actor_id
        adjustment.adjusted_at = utcnow()
        if adjustment.original_billable_hours is None:
            adjustment.original_billable_hours = total_worked
        if adjustment.adjusted_billable_hours is None:
            adjustment.adjusted_billable_hours = total_billable

        return Ok((adjustment, action, before))

    async def _check_target(self, target: AdjustmentTarget) -> Result[None, BillingError]:
        if target.project_id is None:
            return Ok(None)
        locked = await self._check_lock(target.project_id)
        if isinstance(locked, Err):
            return locked
        if target.task_id is not None:
            task = await self.directory.get_task(target.task_id)
            if task is None:
                return Err(NotFoundError("task", target.task_id))
            if task.project_id != target.project_id:
                return Err(
                    ValidationError(
                        "Task does not belong to the adjustment's project",
                        {"task_id": str(task.task_id), "project_id": str(target.project_id)},
                    )
                )
        return Ok(None)

    async def _check_lock(self, project_id: UUID) -> Result[None, BillingError]:
        project = await self.directory.get_project(project_id)
        if project is None:
            return Err(NotFoundError("project", project_id))
        try:
            ProjectLockPolicy.assert_writable(project, self.clock())
        except ProjectLockedError as exc:
            logger.warning("Rejected adjustment write on locked project %s", project_id)
            return Err(exc)
        return Ok(None)

    # ===== Delete =====

    async def delete_adjustment(
        self, adjustment_id: UUID, actor_id: UUID
    ) -> Result[BillingAdjustment, BillingError]:
        """Soft-delete an adjustment, recording actor and time."""
        adjustment = await self.adjustments.get(adjustment_id)
        if adjustment is None:
            return Err(NotFoundError("billing_adjustment", adjustment_id))
        if adjustment.project_id is not None:
            locked = await self._check_lock(adjustment.project_id)
            if isinstance(locked, Err):
                return locked

        before = model_state(adjustment)
        async with self.session.begin_nested():
            adjustment.deleted_at = utcnow()
            adjustment.deleted_by = actor_id
            await self.session.flush()
            self.audit.record(
                entity_type="billing_adjustment",
                entity_id=adjustment.adjustment_id,
                action="delete",
                actor_user_id=actor_id,
                before=before,
                after=model_state(adjustment),
            )

        logger.info("Adjustment %s deleted by %s", adjustment_id, actor_id)
        return Ok(adjustment)

    # ===== Derived writes =====

    async def apply_billable_target(
        self,
        user_id: UUID,
        start: date,
        end: date,
        billable_hours: Decimal,
        actor_id: UUID,
        project_id: UUID | None = None,
        task_id: UUID | None = None,
        total_hours: Decimal | None = None,
        reason: str | None = None,
    ) -> Result[BillingAdjustment, BillingError]:
        """Set a user's billable total for a period.

        The adjustment lands on the first timesheet in the period (for a
        project, the first one carrying hours on it). Its worked-hours
        snapshot is ``total_hours`` if given, else the period's current
        billable figure with this adjustment's own delta left out, and the
        delta is ``billable_hours - snapshot``.
        """
        if end < start:
            return Err(
                ValidationError(
                    "End date is before start date",
                    {"start_date": str(start), "end_date": str(end)},
                )
            )
        billable_hours = quantize(billable_hours)
        if billable_hours < ZERO:
            return Err(
                ValidationError(
                    "Billable hours must not be negative",
                    {"billable_hours": str(billable_hours)},
                )
            )
        if await self.directory.get_user(user_id) is None:
            return Err(NotFoundError("user", user_id))

        date_range = DateRange(start, end)
        dataset = await self.engine.collect(date_range, AggregationFilters(user_ids=[user_id]))
        if not dataset.timesheets:
            return Err(NotFoundError("timesheet", f"user {user_id} in {date_range.label}"))

        ordered = sorted(
            dataset.timesheets.values(),
            key=lambda t: (t.week_start_date, str(t.timesheet_id)),
        )

        if project_id is not None:
            cells = dataset.cells_for(user_id=user_id, project_id=project_id)
            with_hours = {c.timesheet_id for c in cells}
            chosen = next((t for t in ordered if t.timesheet_id in with_hours), ordered[0])
            snapshot = ZERO
            for cell in cells:
                snapshot += cell.baseline if cell.timesheet_id == chosen.timesheet_id else cell.billable_hours
            scope = AdjustmentScope.PROJECT
        else:
            chosen = ordered[0]
            snapshot = ZERO
            for timesheet in ordered:
                totals = dataset.timesheet_totals(timesheet.timesheet_id)
                if timesheet.timesheet_id == chosen.timesheet_id:
                    snapshot += totals.cells_billable_hours
                else:
                    snapshot += totals.billable_hours
            scope = AdjustmentScope.TIMESHEET

        worked = quantize(total_hours) if total_hours is not None else quantize(snapshot)
        request = AdjustmentRequest(
            timesheet_id=chosen.timesheet_id,
            scope=scope,
            billing_period_start=start,
            billing_period_end=end,
            total_worked_hours=worked,
            adjustment_hours=billable_hours - worked,
            reason=reason or "Manual adjustment from billing management",
            project_id=project_id,
            task_id=task_id,
        )
        return await self.upsert_adjustment(request, actor_id)

    async def recompute(self, timesheet_id: UUID) -> Result[list[BillingAdjustment], BillingError]:
        """Refresh worked-hours snapshots of a timesheet's live adjustments.

        Each adjustment keeps its delta; only the snapshot and the derived
        total move with the current hours. Adjustments on locked projects
        are left untouched.
        """
        timesheet = await self.timesheets.get(timesheet_id)
        if timesheet is None:
            return Err(NotFoundError("timesheet", timesheet_id))

        live = await self.adjustments.list_for([timesheet_id])
        if not live:
            return Ok([])

        day = timesheet.week_start_date
        dataset = await self.engine.collect(
            DateRange(day, day),
            AggregationFilters(user_ids=[timesheet.user_id]),
            statuses=ALL_STATUSES,
        )

        changed: list[BillingAdjustment] = []
        async with self.session.begin_nested():
            for adjustment in live:
                if adjustment.project_id is not None:
                    project = dataset.projects.get(adjustment.project_id)
                    if project is None:
                        project = await self.directory.get_project(adjustment.project_id)
                    if project is not None and ProjectLockPolicy.is_project_locked(project, self.clock()):
                        continue
                    cell = dataset.cells.get((adjustment.project_id, timesheet.user_id, timesheet_id))
                    basis = cell.baseline if cell is not None else ZERO
                elif timesheet_id in dataset.timesheets:
                    basis = dataset.timesheet_totals(timesheet_id).cells_billable_hours
                else:
                    basis = ZERO

                basis = quantize(basis)
                if quantize(adjustment.total_worked_hours) == basis:
                    continue

                before = model_state(adjustment)
                adjustment.total_worked_hours = basis
                adjustment.total_billable_hours = derive_total_billable(
                    basis, adjustment.adjustment_hours
                )
                changed.append(adjustment)
                self.audit.record(
                    entity_type="billing_adjustment",
                    entity_id=adjustment.adjustment_id,
                    action="recompute",
                    before=before,
                    after=model_state(adjustment),
                )
            await self.session.flush()

        if changed:
            logger.info("Recomputed %d adjustment(s) on timesheet %s", len(changed), timesheet_id)
        return Ok(changed)

    async def distribute_project_target(
        self,
        project_id: UUID,
        start: date,
        end: date,
        target: Decimal,
        actor_id: UUID,
    ) -> Result[list[BillingAdjustment], BillingError]:
        """Spread a project-level billable total across its resources.

        All per-resource writes succeed together or none persist.
        """
        target = quantize(target)
        if target < ZERO:
            return Err(
                ValidationError("Target must not be negative", {"billable_hours": str(target)})
            )
        locked = await self._check_lock(project_id)
        if isinstance(locked, Err):
            return locked
        if end < start:
            return Err(
                ValidationError(
                    "End date is before start date",
                    {"start_date": str(start), "end_date": str(end)},
                )
            )

        dataset = await self.engine.collect(
            DateRange(start, end), AggregationFilters(project_ids=[project_id])
        )
        records = self.engine.build_project_records(dataset)
        resources = records[0].resources if records else []
        if not resources:
            return Err(
                ValidationError(
                    "No eligible project members found for adjustment",
                    {"project_id": str(project_id)},
                )
            )

        plan = plan_project_targets(
            [(r.user_id, r.billable_hours, r.worked_hours) for r in resources], target
        )

        written: list[BillingAdjustment] = []
        async with self.session.begin_nested() as savepoint:
            for allocation in plan:
                if allocation.target_hours == allocation.current_hours:
                    continue
                result = await self.apply_billable_target(
                    allocation.user_id,
                    start,
                    end,
                    allocation.target_hours,
                    actor_id,
                    project_id=project_id,
                    reason="Project-level billable hours adjustment",
                )
                if isinstance(result, Err):
                    await savepoint.rollback()
                    return result
                written.append(result.value)

        logger.info(
            "Project %s target %s distributed over %d resource(s)", project_id, target, len(written)
        )
        return Ok(written)
