"""ORM models."""

from billing_engine.models.audit import AuditEvent
from billing_engine.models.base import Base, SoftDeleteMixin, TimestampMixin
from billing_engine.models.billing import (
    AdjustmentScope,
    BillingAdjustment,
    BillingSnapshot,
    make_scope_key,
)
from billing_engine.models.directory import USER_ROLES, Client, Project, Task, User
from billing_engine.models.timesheet import (
    BILLING_VISIBLE_STATUSES,
    EDITABLE_STATUSES,
    SNAPSHOT_STATUSES,
    EntryCategory,
    LeaveSession,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
    TimesheetStatus,
)

__all__ = [
    "AdjustmentScope",
    "AuditEvent",
    "Base",
    "BillingAdjustment",
    "BillingSnapshot",
    "BILLING_VISIBLE_STATUSES",
    "Client",
    "EDITABLE_STATUSES",
    "EntryCategory",
    "LeaveSession",
    "Project",
    "SNAPSHOT_STATUSES",
    "SoftDeleteMixin",
    "Task",
    "TimeEntry",
    "Timesheet",
    "TimesheetProjectApproval",
    "TimesheetStatus",
    "TimestampMixin",
    "User",
    "USER_ROLES",
    "make_scope_key",
]
