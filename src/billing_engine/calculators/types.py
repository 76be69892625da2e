"""Type definitions for billing aggregation output."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from billing_engine.calculators.periods import DateRange, Granularity, ViewMode

ZERO = Decimal("0")
TWO_PLACES = Decimal("0.01")


def quantize(value: Decimal | int | float | str | None) -> Decimal:
    """Round hours or money to two places."""
    if value is None:
        return ZERO.quantize(TWO_PLACES)
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO


@dataclass(frozen=True)
class VerificationInfo:
    """Team-review baseline for a (project, user) cell or aggregate."""

    verified_worked_hours: Decimal
    manager_adjustment: Decimal
    verified_billable_hours: Decimal
    verified_at: datetime | None = None


@dataclass
class ProjectVerificationSummary:
    """Verification totals across a project's resources."""

    verified_worked_hours: Decimal = ZERO
    verified_billable_hours: Decimal = ZERO
    manager_adjustment: Decimal = ZERO
    verified_user_count: int = 0
    last_verified_at: datetime | None = None


# ===== Rows =====


@dataclass
class TaskRow:
    """Raw entry figures for one task under a resource."""

    task_id: UUID | None
    task_name: str
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class ResourceRow:
    """One user's figures within a project."""

    user_id: UUID
    user_name: str
    role: str
    hourly_rate: Decimal
    adjustment_hours: Decimal = ZERO
    verification: VerificationInfo | None = None
    tasks: list[TaskRow] = field(default_factory=list)
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class ProjectBillingRecord:
    """Project with its per-resource rows.

    Parent figures are straight sums of ``resources``.
    """

    project_id: UUID
    project_name: str
    client_id: UUID | None
    client_name: str | None
    start_date: date | None
    end_date: date | None
    is_locked: bool
    resources: list[ResourceRow] = field(default_factory=list)
    verification: ProjectVerificationSummary | None = None
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class TaskResourceRow:
    """One user's raw figures on a task."""

    user_id: UUID
    user_name: str
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class TaskBillingRecord:
    """Task with its per-resource rows (raw entry figures)."""

    task_id: UUID | None
    task_name: str
    project_id: UUID
    project_name: str
    resources: list[TaskResourceRow] = field(default_factory=list)
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class UserProjectRow:
    """One project's figures within a user record."""

    project_id: UUID
    project_name: str
    is_locked: bool
    adjustment_hours: Decimal = ZERO
    verification: VerificationInfo | None = None
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class UserBillingRecord:
    """User with per-project rows plus the timesheet-scope correction.

    ``billable_hours`` equals the sum of ``projects`` billable hours plus
    ``timesheet_adjustment_effect``.
    """

    user_id: UUID
    user_name: str
    role: str
    hourly_rate: Decimal
    projects: list[UserProjectRow] = field(default_factory=list)
    timesheet_adjustment_hours: Decimal = ZERO
    timesheet_adjustment_effect: Decimal = ZERO
    other_hours: Decimal = ZERO  # leave, holiday and miscellaneous
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


# ===== Results =====


@dataclass
class BillingSummary:
    """Totals across the top-level rows of a result."""

    row_count: int = 0
    total_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    non_billable_hours: Decimal = ZERO
    total_amount: Decimal = ZERO


@dataclass
class AggregationFilters:
    """Optional narrowing of an aggregation."""

    project_ids: list[UUID] = field(default_factory=list)
    client_ids: list[UUID] = field(default_factory=list)
    user_ids: list[UUID] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)
    search: str | None = None

    @property
    def restricts_projects(self) -> bool:
        return bool(self.project_ids or self.client_ids or self.search)


@dataclass
class AggregationResult:
    """Aggregation output.

    ``error`` is set both when the dataset is empty and when the query
    failed; ``failed`` distinguishes the two.
    """

    date_range: DateRange
    view: ViewMode
    group_by: str
    projects: list[ProjectBillingRecord] = field(default_factory=list)
    tasks: list[TaskBillingRecord] = field(default_factory=list)
    users: list[UserBillingRecord] = field(default_factory=list)
    summary: BillingSummary = field(default_factory=BillingSummary)
    error: str | None = None
    failed: bool = False

    @property
    def rows(self) -> list[Any]:
        if self.group_by == "task":
            return self.tasks
        if self.group_by == "user":
            return self.users
        return self.projects


@dataclass
class BreakdownPeriod:
    """One period of a breakdown, or the trailing total."""

    label: str
    start_date: date
    end_date: date
    worked_hours: Decimal = ZERO
    billable_hours: Decimal = ZERO
    amount: Decimal = ZERO


@dataclass
class BreakdownResult:
    """Ordered period rows plus their total."""

    project_id: UUID
    user_id: UUID
    granularity: Granularity
    date_range: DateRange
    periods: list[BreakdownPeriod] = field(default_factory=list)
    total: BreakdownPeriod | None = None
    error: str | None = None
