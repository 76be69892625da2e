"""Weekly billing snapshot generation and lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.periods import DateRange, week_start
from billing_engine.calculators.types import ZERO, quantize
from billing_engine.errors import (
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from billing_engine.models import SNAPSHOT_STATUSES, BillingSnapshot, Timesheet
from billing_engine.models.base import utcnow
from billing_engine.services.aggregation import AggregationEngine, BillingDataset, TimesheetTotals
from billing_engine.services.audit import AuditRecorder, model_state
from billing_engine.services.repositories import (
    DirectoryRepository,
    SnapshotRepository,
    TimesheetRepository,
)

logger = logging.getLogger(__name__)

SNAPSHOT_ENTITY = "billing_snapshot"


@dataclass
class SnapshotOutcome:
    """What happened to one timesheet's snapshot."""

    snapshot: BillingSnapshot
    status: str  # created, unchanged or superseded
    superseded_id: UUID | None = None


@dataclass
class SnapshotFailure:
    timesheet_id: UUID
    code: str
    message: str


@dataclass
class SnapshotGenerationResult:
    """Result of generating one week's snapshots."""

    week_start_date: date
    outcomes: list[SnapshotOutcome] = field(default_factory=list)
    failures: list[SnapshotFailure] = field(default_factory=list)

    @property
    def snapshots(self) -> list[BillingSnapshot]:
        return [o.snapshot for o in self.outcomes]

    @property
    def success(self) -> bool:
        return len(self.failures) == 0


class SnapshotService:
    """Generates immutable per-(timesheet, week) billing records.

    Regeneration is keyed on (timesheet, week): identical figures reuse the
    live snapshot; changed figures soft-delete it and create a new one. A
    snapshot row is never updated except for its delete-state columns.

    Deletion is two-stage: soft delete hides a snapshot from default reads
    and can be undone; hard delete is irreversible, only allowed after a
    soft delete, and hides the row from every read.
    """

    def __init__(
        self,
        session: AsyncSession,
        snapshots: SnapshotRepository,
        timesheets: TimesheetRepository,
        directory: DirectoryRepository,
        engine: AggregationEngine,
        audit: AuditRecorder,
    ):
        self.session = session
        self.snapshots = snapshots
        self.timesheets = timesheets
        self.directory = directory
        self.engine = engine
        self.audit = audit

    # ===== Generation =====

    async def generate_weekly_snapshot(
        self, week_start_date: date, actor_id: UUID | None = None
    ) -> SnapshotGenerationResult:
        """Snapshot every frozen or billed timesheet of the week.

        A failing timesheet is recorded in ``failures`` and does not stop
        the others; each timesheet is written in its own savepoint.

        Raises:
            ValidationError: If ``week_start_date`` is not a Monday.
        """
        if week_start(week_start_date) != week_start_date:
            raise ValidationError(
                "Week start date must be a Monday",
                {"week_start_date": str(week_start_date)},
            )

        result = SnapshotGenerationResult(week_start_date=week_start_date)
        timesheets = await self.timesheets.list_for_week(week_start_date, SNAPSHOT_STATUSES)
        if not timesheets:
            logger.warning("No frozen or billed timesheets for week of %s", week_start_date)
            return result

        dataset = await self.engine.collect(
            DateRange(week_start_date, week_start_date),
            statuses=SNAPSHOT_STATUSES,
        )

        for timesheet in timesheets:
            try:
                async with self.session.begin_nested():
                    outcome = await self._snapshot_timesheet(timesheet, dataset, actor_id)
            except BillingError as exc:
                logger.warning(
                    "Snapshot skipped for timesheet %s: %s", timesheet.timesheet_id, exc.message
                )
                result.failures.append(
                    SnapshotFailure(timesheet.timesheet_id, exc.code, exc.message)
                )
                continue
            except SQLAlchemyError as exc:
                logger.exception("Snapshot failed for timesheet %s", timesheet.timesheet_id)
                result.failures.append(
                    SnapshotFailure(timesheet.timesheet_id, "STORAGE_ERROR", str(exc))
                )
                continue
            result.outcomes.append(outcome)

        logger.info(
            "Week of %s: %d snapshot(s), %d failure(s)",
            week_start_date,
            len(result.outcomes),
            len(result.failures),
        )
        return result

    async def _snapshot_timesheet(
        self,
        timesheet: Timesheet,
        dataset: BillingDataset,
        actor_id: UUID | None,
    ) -> SnapshotOutcome:
        user = dataset.users.get(timesheet.user_id)
        if user is None or timesheet.timesheet_id not in dataset.timesheets:
            raise NotFoundError("user", timesheet.user_id)
        totals = dataset.timesheet_totals(timesheet.timesheet_id)

        rate = quantize(user.hourly_rate)
        if rate <= ZERO:
            raise ValidationError(
                f"User {user.user_id} has no positive hourly rate",
                {"user_id": str(user.user_id), "hourly_rate": str(rate)},
            )

        figures = {
            "total_hours": totals.worked_hours,
            "billable_hours": totals.billable_hours,
            "hourly_rate": rate,
            "total_amount": quantize(totals.worked_hours * rate),
            "billable_amount": quantize(totals.billable_hours * rate),
        }
        detail = self._detail(timesheet, totals, dataset)

        existing = await self.snapshots.find_live(timesheet.timesheet_id, timesheet.week_start_date)
        if existing is not None and self._same_figures(existing, figures):
            return SnapshotOutcome(snapshot=existing, status="unchanged")

        superseded_id = None
        if existing is not None:
            existing.deleted_at = utcnow()
            existing.deleted_by = actor_id
            superseded_id = existing.snapshot_id
            # Free the live (timesheet, week) slot before inserting
            await self.session.flush()

        snapshot = BillingSnapshot(
            timesheet_id=timesheet.timesheet_id,
            user_id=timesheet.user_id,
            week_start_date=timesheet.week_start_date,
            week_end_date=timesheet.week_end_date,
            snapshot_data=detail,
            created_by=actor_id,
            **figures,
        )
        self.session.add(snapshot)
        await self.session.flush()

        self.audit.record(
            entity_type=SNAPSHOT_ENTITY,
            entity_id=snapshot.snapshot_id,
            action="supersede" if superseded_id else "generate",
            actor_user_id=actor_id,
            before={"superseded_id": superseded_id} if superseded_id else None,
            after=model_state(snapshot),
        )
        return SnapshotOutcome(
            snapshot=snapshot,
            status="superseded" if superseded_id else "created",
            superseded_id=superseded_id,
        )

    @staticmethod
    def _same_figures(snapshot: BillingSnapshot, figures: dict[str, Decimal]) -> bool:
        return all(quantize(getattr(snapshot, name)) == value for name, value in figures.items())

    @staticmethod
    def _detail(
        timesheet: Timesheet, totals: TimesheetTotals, dataset: BillingDataset
    ) -> dict[str, Any]:
        projects = []
        for cell in sorted(totals.cells, key=lambda c: str(c.project_id)):
            project = dataset.projects.get(cell.project_id)
            projects.append(
                {
                    "project_id": str(cell.project_id),
                    "project_name": project.name if project else None,
                    "worked_hours": str(cell.worked_hours),
                    "billable_hours": str(cell.billable_hours),
                    "adjustment_hours": (
                        str(cell.adjustment_hours) if cell.adjustment_hours is not None else None
                    ),
                    "verified": cell.verification is not None,
                    "amount": str(cell.amount),
                }
            )
        return {
            "timesheet_status": timesheet.status,
            "projects": projects,
            "timesheet_adjustment_hours": (
                str(totals.adjustment_hours) if totals.adjustment_hours is not None else None
            ),
            "other_hours": str(totals.other_hours),
        }

    # ===== Lifecycle =====

    async def list_snapshots(
        self, include_deleted: bool = False, week_start_date: date | None = None
    ) -> list[BillingSnapshot]:
        return await self.snapshots.list_visible(include_deleted, week_start_date)

    async def get_snapshot(self, snapshot_id: UUID, include_deleted: bool = False) -> BillingSnapshot:
        snapshot = await self.snapshots.get(snapshot_id, include_deleted=include_deleted)
        if snapshot is None:
            raise NotFoundError(SNAPSHOT_ENTITY, snapshot_id)
        return snapshot

    async def soft_delete_snapshot(self, snapshot_id: UUID, actor_id: UUID | None) -> BillingSnapshot:
        snapshot = await self.get_snapshot(snapshot_id)
        snapshot.deleted_at = utcnow()
        snapshot.deleted_by = actor_id
        await self.session.flush()
        self.audit.record(
            entity_type=SNAPSHOT_ENTITY,
            entity_id=snapshot_id,
            action="soft_delete",
            actor_user_id=actor_id,
            after={"deleted_at": snapshot.deleted_at},
        )
        logger.info("Snapshot %s soft-deleted by %s", snapshot_id, actor_id)
        return snapshot

    async def restore_snapshot(self, snapshot_id: UUID, actor_id: UUID | None) -> BillingSnapshot:
        """Undo a soft delete.

        Raises:
            NotFoundError: Unknown or hard-deleted snapshot.
            ValidationError: The snapshot is not soft-deleted.
            ConflictError: A newer live snapshot holds the same week.
        """
        snapshot = await self.get_snapshot(snapshot_id, include_deleted=True)
        if snapshot.deleted_at is None:
            raise ValidationError(
                "Snapshot is not deleted", {"snapshot_id": str(snapshot_id)}
            )
        live = await self.snapshots.find_live(snapshot.timesheet_id, snapshot.week_start_date)
        if live is not None:
            raise ConflictError(
                "Another live snapshot exists for this timesheet week",
                {"snapshot_id": str(snapshot_id), "live_snapshot_id": str(live.snapshot_id)},
            )

        before = {"deleted_at": snapshot.deleted_at, "deleted_by": snapshot.deleted_by}
        snapshot.deleted_at = None
        snapshot.deleted_by = None
        await self.session.flush()
        self.audit.record(
            entity_type=SNAPSHOT_ENTITY,
            entity_id=snapshot_id,
            action="restore",
            actor_user_id=actor_id,
            before=before,
        )
        logger.info("Snapshot %s restored by %s", snapshot_id, actor_id)
        return snapshot

    async def hard_delete_snapshot(self, snapshot_id: UUID, actor_id: UUID | None) -> BillingSnapshot:
        """Irreversibly remove a soft-deleted snapshot from every read.

        Raises:
            NotFoundError: Unknown or already hard-deleted snapshot.
            ValidationError: The snapshot has not been soft-deleted first.
        """
        snapshot = await self.get_snapshot(snapshot_id, include_deleted=True)
        if snapshot.deleted_at is None:
            raise ValidationError(
                "Snapshot must be soft-deleted before it can be permanently deleted",
                {"snapshot_id": str(snapshot_id)},
            )
        snapshot.is_hard_deleted = True
        snapshot.hard_deleted_at = utcnow()
        snapshot.hard_deleted_by = actor_id
        await self.session.flush()
        self.audit.record(
            entity_type=SNAPSHOT_ENTITY,
            entity_id=snapshot_id,
            action="hard_delete",
            actor_user_id=actor_id,
            after={"hard_deleted_at": snapshot.hard_deleted_at},
        )
        logger.warning("Snapshot %s permanently deleted by %s", snapshot_id, actor_id)
        return snapshot
