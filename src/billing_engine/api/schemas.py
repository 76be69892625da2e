"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================================================
# Base schemas
# ============================================================================


class CamelRequest(BaseModel):
    """Request body accepting camelCase keys (snake_case also accepted)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    detail: str
    code: str
    context: dict[str, Any] = Field(default_factory=dict)


class DateRangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start: date
    end: date


# ============================================================================
# Aggregation schemas
# ============================================================================


class VerificationResponse(BaseModel):
    """Team-review baseline attached to a resource or project row."""

    model_config = ConfigDict(from_attributes=True)

    verified_worked_hours: Decimal
    manager_adjustment: Decimal
    verified_billable_hours: Decimal
    verified_at: datetime | None = None


class ProjectVerificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    verified_worked_hours: Decimal
    verified_billable_hours: Decimal
    manager_adjustment: Decimal
    verified_user_count: int
    last_verified_at: datetime | None = None


class TaskRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: UUID | None = None
    task_name: str
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class ResourceRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    user_name: str
    role: str
    hourly_rate: Decimal
    adjustment_hours: Decimal
    verification: VerificationResponse | None = None
    tasks: list[TaskRowResponse]
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class ProjectRecordResponse(BaseModel):
    """Project row with per-resource children."""

    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    project_name: str
    client_id: UUID | None = None
    client_name: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_locked: bool
    resources: list[ResourceRowResponse]
    verification: ProjectVerificationResponse | None = None
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class TaskResourceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    user_name: str
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class TaskRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: UUID | None = None
    task_name: str
    project_id: UUID
    project_name: str
    resources: list[TaskResourceResponse]
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class UserProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    project_name: str
    is_locked: bool
    adjustment_hours: Decimal
    verification: VerificationResponse | None = None
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class UserRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    user_name: str
    role: str
    hourly_rate: Decimal
    projects: list[UserProjectResponse]
    timesheet_adjustment_hours: Decimal
    timesheet_adjustment_effect: Decimal
    other_hours: Decimal
    worked_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    amount: Decimal


class SummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row_count: int
    total_hours: Decimal
    billable_hours: Decimal
    non_billable_hours: Decimal
    total_amount: Decimal


class AggregationResponse(BaseModel):
    """Schema for an aggregation result.

    Only the list matching ``group_by`` is populated.
    """

    model_config = ConfigDict(from_attributes=True)

    date_range: DateRangeResponse
    view: str
    group_by: str
    projects: list[ProjectRecordResponse]
    tasks: list[TaskRecordResponse]
    users: list[UserRecordResponse]
    summary: SummaryResponse
    error: str | None = None
    failed: bool = False


# ============================================================================
# Breakdown schemas
# ============================================================================


class BreakdownPeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    start_date: date
    end_date: date
    worked_hours: Decimal
    billable_hours: Decimal
    amount: Decimal


class BreakdownResponse(BaseModel):
    """Schema for a per-period breakdown."""

    model_config = ConfigDict(from_attributes=True)

    project_id: UUID
    user_id: UUID
    granularity: str
    date_range: DateRangeResponse
    periods: list[BreakdownPeriodResponse]
    total: BreakdownPeriodResponse | None = None
    error: str | None = None


# ============================================================================
# Adjustment schemas
# ============================================================================


class BillableTargetRequest(CamelRequest):
    """Schema for setting a user's billable total over a period."""

    user_id: UUID
    project_id: UUID | None = None
    task_id: UUID | None = None
    start_date: date
    end_date: date
    billable_hours: Decimal = Field(ge=0)
    total_hours: Decimal | None = Field(default=None, ge=0)
    reason: str | None = None


class ProjectTargetRequest(CamelRequest):
    """Schema for distributing a project's billable total."""

    start_date: date
    end_date: date
    billable_hours: Decimal = Field(ge=0)


class AdjustmentResponse(BaseModel):
    """Schema for a billing adjustment."""

    model_config = ConfigDict(from_attributes=True)

    adjustment_id: UUID
    timesheet_id: UUID
    user_id: UUID
    scope: str
    project_id: UUID | None = None
    task_id: UUID | None = None
    billing_period_start: date
    billing_period_end: date
    total_worked_hours: Decimal
    adjustment_hours: Decimal
    total_billable_hours: Decimal
    original_billable_hours: Decimal | None = None
    adjusted_billable_hours: Decimal | None = None
    reason: str | None = None
    adjusted_by: UUID
    adjusted_at: datetime
    deleted_at: datetime | None = None


class AdjustmentListResponse(BaseModel):
    items: list[AdjustmentResponse]
    total: int


# ============================================================================
# Snapshot schemas
# ============================================================================


class SnapshotGenerateRequest(CamelRequest):
    week_start_date: date


class SnapshotResponse(BaseModel):
    """Schema for a weekly billing snapshot."""

    model_config = ConfigDict(from_attributes=True)

    snapshot_id: UUID
    timesheet_id: UUID
    user_id: UUID
    week_start_date: date
    week_end_date: date
    total_hours: Decimal
    billable_hours: Decimal
    hourly_rate: Decimal
    total_amount: Decimal
    billable_amount: Decimal
    snapshot_data: dict[str, Any]
    created_by: UUID | None = None
    created_at: datetime
    deleted_at: datetime | None = None


class SnapshotOutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    snapshot: SnapshotResponse
    status: str
    superseded_id: UUID | None = None


class SnapshotFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timesheet_id: UUID
    code: str
    message: str


class SnapshotGenerateResponse(BaseModel):
    """Schema for the result of a weekly generation run."""

    model_config = ConfigDict(from_attributes=True)

    week_start_date: date
    outcomes: list[SnapshotOutcomeResponse]
    failures: list[SnapshotFailureResponse]
    success: bool


class SnapshotListResponse(BaseModel):
    items: list[SnapshotResponse]
    total: int


# ============================================================================
# Time entry schemas
# ============================================================================


class TimeEntryRequest(CamelRequest):
    """Raw time entry; category-specific checks happen in the classifier."""

    entry_category: str = "project"
    entry_date: date
    hours: Decimal | None = None
    is_billable: bool | None = None
    billable_hours: Decimal | None = None
    hourly_rate: Decimal | None = None
    description: str | None = None
    project_id: UUID | None = None
    task_id: UUID | None = None
    custom_task_description: str | None = None
    leave_session: str | None = None
    holiday_name: str | None = None
    miscellaneous_activity: str | None = None


class TimeEntryResponse(BaseModel):
    """Schema for a stored time entry."""

    model_config = ConfigDict(from_attributes=True)

    time_entry_id: UUID
    timesheet_id: UUID
    entry_category: str
    entry_date: date
    hours: Decimal
    is_billable: bool
    billable_hours: Decimal | None = None
    hourly_rate: Decimal | None = None
    description: str | None = None
    project_id: UUID | None = None
    task_id: UUID | None = None
    custom_task_description: str | None = None
    leave_session: str | None = None
    holiday_name: str | None = None
    miscellaneous_activity: str | None = None
    deleted_at: datetime | None = None
