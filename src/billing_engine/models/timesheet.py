"""Timesheet, time entry and team-review approval models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
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
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.models.base import Base, SoftDeleteMixin, TimestampMixin

if TYPE_CHECKING:
    from billing_engine.models.directory import Project, Task, User


class TimesheetStatus(str, Enum):
    """Timesheet workflow status values (owned by the approval workflow)."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    LEAD_APPROVED = "lead_approved"
    LEAD_REJECTED = "lead_rejected"
    MANAGER_APPROVED = "manager_approved"
    MANAGER_REJECTED = "manager_rejected"
    MANAGEMENT_PENDING = "management_pending"
    MANAGEMENT_REJECTED = "management_rejected"
    FROZEN = "frozen"
    BILLED = "billed"


# Statuses where entries may be written
EDITABLE_STATUSES = frozenset(
    {
        TimesheetStatus.DRAFT.value,
        TimesheetStatus.LEAD_REJECTED.value,
        TimesheetStatus.MANAGER_REJECTED.value,
        TimesheetStatus.MANAGEMENT_REJECTED.value,
    }
)

# Statuses whose hours feed billing aggregation
BILLING_VISIBLE_STATUSES = frozenset(
    s.value for s in TimesheetStatus if s.value not in EDITABLE_STATUSES
)

# Statuses eligible for weekly snapshot generation
SNAPSHOT_STATUSES = frozenset(
    {TimesheetStatus.FROZEN.value, TimesheetStatus.BILLED.value}
)


class EntryCategory(str, Enum):
    """Time entry category."""

    PROJECT = "project"
    TRAINING = "training"
    LEAVE = "leave"
    HOLIDAY = "holiday"
    MISCELLANEOUS = "miscellaneous"


class LeaveSession(str, Enum):
    """Leave session; determines the fixed hours of a leave entry."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    FULL_DAY = "full_day"


class Timesheet(Base, TimestampMixin, SoftDeleteMixin):
    """One user's week of time entries."""

    __tablename__ = "timesheet"

    timesheet_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("app_user.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TimesheetStatus.DRAFT.value
    )
    total_hours: Mapped[Decimal] = mapped_column(
        Numeric(8, 2), nullable=False, default=Decimal("0")
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'lead_approved', 'lead_rejected', "
            "'manager_approved', 'manager_rejected', 'management_pending', "
            "'management_rejected', 'frozen', 'billed')",
            name="timesheet_status_check",
        ),
        CheckConstraint("week_end_date >= week_start_date", name="timesheet_dates_check"),
        Index("timesheet_user_week", "user_id", "week_start_date"),
    )

    # Relationships
    user: Mapped[User] = relationship()
    entries: Mapped[list[TimeEntry]] = relationship(back_populates="timesheet")

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES


class TimeEntry(Base, TimestampMixin, SoftDeleteMixin):
    """One logged slice of a day.

    Rows are written only after passing through
    ``calculators.entry_classifier.classify``; the per-category columns
    mirror the variant that was accepted.
    """

    __tablename__ = "time_entry"

    time_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"),
        nullable=False,
    )
    entry_category: Mapped[str] = mapped_column(String, nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billable_hours: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0")
    )
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Category payload
    project_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("project.project_id"),
        nullable=True,
    )
    task_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("task.task_id"),
        nullable=True,
    )
    custom_task_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    leave_session: Mapped[str | None] = mapped_column(String, nullable=True)
    holiday_name: Mapped[str | None] = mapped_column(String, nullable=True)
    miscellaneous_activity: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "entry_category IN ('project', 'training', 'leave', 'holiday', 'miscellaneous')",
            name="time_entry_category_check",
        ),
        CheckConstraint("hours >= 0 AND hours <= 24", name="time_entry_hours_check"),
        CheckConstraint(
            "billable_hours >= 0 AND billable_hours <= 24",
            name="time_entry_billable_hours_check",
        ),
        Index("time_entry_timesheet", "timesheet_id"),
    )

    # Relationships
    timesheet: Mapped[Timesheet] = relationship(back_populates="entries")
    project: Mapped[Project | None] = relationship()
    task: Mapped[Task | None] = relationship()


class TimesheetProjectApproval(Base, TimestampMixin):
    """Team-review record for one project's hours within a timesheet.

    An approved record is the verification baseline for its
    (timesheet, project) cell.
    """

    __tablename__ = "timesheet_project_approval"

    approval_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("project.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    worked_hours: Mapped[Decimal] = mapped_column(
        Numeric(8, 2), nullable=False, default=Decimal("0")
    )
    billable_hours: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    billable_adjustment: Mapped[Decimal] = mapped_column(
        Numeric(8, 2), nullable=False, default=Decimal("0")
    )
    management_status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )
    management_approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("timesheet_id", "project_id", name="tpa_timesheet_project_unique"),
        CheckConstraint(
            "management_status IN ('pending', 'approved', 'rejected')",
            name="tpa_management_status_check",
        ),
    )

    @property
    def is_verified(self) -> bool:
        return self.management_status == "approved"
