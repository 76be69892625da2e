"""Billing adjustment ledger and weekly snapshot models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow


class AdjustmentScope(str, Enum):
    """What an adjustment corrects."""

    PROJECT = "project"
    TIMESHEET = "timesheet"


def make_scope_key(timesheet_id: UUID, scope: str, project_id: UUID | None) -> str:
    """Build the uniqueness key for an adjustment's (timesheet, scope, project)."""
    return f"{timesheet_id}:{scope}:{project_id or '-'}"


class BillingAdjustment(Base, TimestampMixin, SoftDeleteMixin):
    """Persistent manual correction of billable hours.

    At most one live (``deleted_at IS NULL``) row exists per ``scope_key``;
    the partial unique index enforces it against concurrent writers.
    """

    __tablename__ = "billing_adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    scope: Mapped[str] = mapped_column(String, nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("project.project_id"),
        nullable=True,
    )
    task_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("task.task_id"),
        nullable=True,
    )
    scope_key: Mapped[str] = mapped_column(String, nullable=False)

    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_worked_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    adjustment_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_billable_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Mirror fields kept for older readers; written once, never overwritten
    original_billable_hours: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    adjusted_billable_hours: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    adjusted_by: Mapped[UUID] = mapped_column(nullable=False)
    adjusted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "scope IN ('project', 'timesheet')", name="billing_adjustment_scope_check"
        ),
        CheckConstraint(
            "(scope = 'project' AND project_id IS NOT NULL) "
            "OR (scope = 'timesheet' AND project_id IS NULL)",
            name="billing_adjustment_scope_target_check",
        ),
        CheckConstraint(
            "total_billable_hours >= 0", name="billing_adjustment_total_nonneg"
        ),
        Index(
            "billing_adjustment_live_scope_key",
            "scope_key",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("billing_adjustment_timesheet", "timesheet_id"),
    )


class BillingSnapshot(Base, SoftDeleteMixin):
    """Immutable billing rollup for one (timesheet, week).

    Only the delete-state columns change after insert.
    """

    __tablename__ = "billing_snapshot"

    snapshot_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    billable_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    billable_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    snapshot_data: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)

    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    is_hard_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hard_deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    hard_deleted_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("hourly_rate > 0", name="billing_snapshot_rate_positive"),
        CheckConstraint(
            "NOT is_hard_deleted OR deleted_at IS NOT NULL",
            name="billing_snapshot_hard_after_soft",
        ),
        Index(
            "billing_snapshot_live_timesheet_week",
            "timesheet_id",
            "week_start_date",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("billing_snapshot_week", "week_start_date"),
    )
