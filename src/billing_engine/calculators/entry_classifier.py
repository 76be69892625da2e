"""Time entry classification and normalization.

Every raw entry passes through ``classify`` before it is written. The
result is one variant of ``NormalizedEntry``; each variant carries exactly
the fields its category requires, so downstream code never has to check
which optional payload columns are populated.

Category rules:
- project / training: project required, plus exactly one of an existing
  task reference or a free-text task description
- leave: session required; hours overwritten to 4 (half day) or 8
  (full day); never billable
- holiday: holiday name required; never billable
- miscellaneous: activity description required; never billable
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Mapping, Union
from uuid import UUID

from billing_engine.calculators.types import ZERO, quantize
from billing_engine.errors import InvalidCategoryError, ValidationError
from billing_engine.models.timesheet import EntryCategory, LeaveSession
from billing_engine.result import Err, Ok, Result

MAX_HOURS_PER_ENTRY = Decimal("24")
# Largest value a Numeric(12, 2) rate column holds
MAX_HOURLY_RATE = Decimal("9999999999.99")
HALF_DAY_HOURS = Decimal("4")
FULL_DAY_HOURS = Decimal("8")

LEAVE_HOURS = {
    LeaveSession.MORNING: HALF_DAY_HOURS,
    LeaveSession.AFTERNOON: HALF_DAY_HOURS,
    LeaveSession.FULL_DAY: FULL_DAY_HOURS,
}


# ===== Task discriminator =====


@dataclass(frozen=True)
class ExistingTask:
    """Reference to a catalog task."""

    task_id: UUID


@dataclass(frozen=True)
class CustomTask:
    """Free-text task description."""

    description: str


TaskRef = Union[ExistingTask, CustomTask]


# ===== Entry variants =====


@dataclass(frozen=True, kw_only=True)
class _EntryBase:
    entry_date: date
    hours: Decimal
    is_billable: bool
    billable_hours: Decimal
    hourly_rate: Decimal | None = None
    description: str | None = None

    category: ClassVar[EntryCategory]


@dataclass(frozen=True, kw_only=True)
class ProjectEntry(_EntryBase):
    project_id: UUID
    task: TaskRef

    category: ClassVar[EntryCategory] = EntryCategory.PROJECT


@dataclass(frozen=True, kw_only=True)
class TrainingEntry(_EntryBase):
    project_id: UUID
    task: TaskRef

    category: ClassVar[EntryCategory] = EntryCategory.TRAINING


@dataclass(frozen=True, kw_only=True)
class LeaveEntry(_EntryBase):
    session: LeaveSession

    category: ClassVar[EntryCategory] = EntryCategory.LEAVE


@dataclass(frozen=True, kw_only=True)
class HolidayEntry(_EntryBase):
    holiday_name: str

    category: ClassVar[EntryCategory] = EntryCategory.HOLIDAY


@dataclass(frozen=True, kw_only=True)
class MiscellaneousEntry(_EntryBase):
    activity: str

    category: ClassVar[EntryCategory] = EntryCategory.MISCELLANEOUS


NormalizedEntry = Union[
    ProjectEntry, TrainingEntry, LeaveEntry, HolidayEntry, MiscellaneousEntry
]


class _Rejected(Exception):
    """Internal short-circuit carrying the validation failure."""

    def __init__(self, error: ValidationError):
        self.error = error
        super().__init__(error.message)


def _reject(message: str, **context: Any) -> _Rejected:
    return _Rejected(ValidationError(message, {k: str(v) for k, v in context.items()}))


# ===== Field parsing =====


def _text(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _uuid(raw: Mapping[str, Any], key: str) -> UUID | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise _reject(f"'{key}' is not a valid id", **{key: value})


def _decimal(raw: Mapping[str, Any], key: str) -> Decimal | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise _reject(f"'{key}' is not a number", **{key: value})
    if not parsed.is_finite():
        raise _reject(f"'{key}' is not a number", **{key: value})
    return parsed


def _date(raw: Mapping[str, Any], key: str) -> date:
    value = raw.get(key)
    if value is None or value == "":
        raise _reject(f"'{key}' is required")
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise _reject(f"'{key}' is not an ISO date", **{key: value})


def _bool(raw: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _hours(raw: Mapping[str, Any]) -> Decimal:
    hours = _decimal(raw, "hours")
    if hours is None:
        raise _reject("'hours' is required")
    if hours < ZERO or hours > MAX_HOURS_PER_ENTRY:
        raise _reject("'hours' must be between 0 and 24", hours=hours)
    return quantize(hours)


def _billable_hours(raw: Mapping[str, Any], hours: Decimal, is_billable: bool) -> Decimal:
    """Explicit override if given, else all hours when billable, else 0."""
    if not is_billable:
        return quantize(ZERO)
    override = _decimal(raw, "billable_hours")
    if override is None:
        return hours
    if override < ZERO or override > hours:
        raise _reject(
            "'billable_hours' must be between 0 and the entry's hours",
            billable_hours=override,
            hours=hours,
        )
    return quantize(override)


def _hourly_rate(raw: Mapping[str, Any]) -> Decimal | None:
    rate = _decimal(raw, "hourly_rate")
    if rate is not None and rate < ZERO:
        raise _reject("'hourly_rate' must not be negative", hourly_rate=rate)
    if rate is not None and rate > MAX_HOURLY_RATE:
        raise _reject(f"'hourly_rate' must not exceed {MAX_HOURLY_RATE}", hourly_rate=rate)
    return quantize(rate) if rate is not None else None


def _task_ref(raw: Mapping[str, Any]) -> TaskRef:
    task_id = _uuid(raw, "task_id")
    custom = _text(raw, "custom_task_description")
    if task_id is not None and custom is not None:
        raise _reject("Provide either 'task_id' or 'custom_task_description', not both")
    if task_id is not None:
        return ExistingTask(task_id)
    if custom is not None:
        return CustomTask(custom)
    raise _reject("'task_id' or 'custom_task_description' is required")


# ===== Classification =====


def _classify(raw: Mapping[str, Any]) -> NormalizedEntry:
    category_value = raw.get("entry_category", EntryCategory.PROJECT.value)
    try:
        category = EntryCategory(category_value)
    except ValueError:
        raise _Rejected(InvalidCategoryError(category_value))

    entry_date = _date(raw, "entry_date")
    common: dict[str, Any] = {
        "entry_date": entry_date,
        "hourly_rate": _hourly_rate(raw),
        "description": _text(raw, "description"),
    }

    if category in (EntryCategory.PROJECT, EntryCategory.TRAINING):
        project_id = _uuid(raw, "project_id")
        if project_id is None:
            raise _reject(f"'project_id' is required for {category.value} entries")
        task = _task_ref(raw)
        hours = _hours(raw)
        is_billable = _bool(raw, "is_billable", default=True)
        variant = ProjectEntry if category == EntryCategory.PROJECT else TrainingEntry
        return variant(
            project_id=project_id,
            task=task,
            hours=hours,
            is_billable=is_billable,
            billable_hours=_billable_hours(raw, hours, is_billable),
            **common,
        )

    if category == EntryCategory.LEAVE:
        session_value = _text(raw, "leave_session")
        if session_value is None:
            raise _reject("'leave_session' is required for leave entries")
        try:
            session = LeaveSession(session_value)
        except ValueError:
            raise _reject("Invalid 'leave_session'", leave_session=session_value)
        return LeaveEntry(
            session=session,
            hours=quantize(LEAVE_HOURS[session]),
            is_billable=False,
            billable_hours=quantize(ZERO),
            **common,
        )

    # Holiday and miscellaneous: hours as given, never billable
    hours = _hours(raw)
    if category == EntryCategory.HOLIDAY:
        holiday_name = _text(raw, "holiday_name")
        if holiday_name is None:
            raise _reject("'holiday_name' is required for holiday entries")
        return HolidayEntry(
            holiday_name=holiday_name,
            hours=hours,
            is_billable=False,
            billable_hours=quantize(ZERO),
            **common,
        )

    activity = _text(raw, "miscellaneous_activity")
    if activity is None:
        raise _reject("'miscellaneous_activity' is required for miscellaneous entries")
    return MiscellaneousEntry(
        activity=activity,
        hours=hours,
        is_billable=False,
        billable_hours=quantize(ZERO),
        **common,
    )


def classify(raw: Mapping[str, Any]) -> Result[NormalizedEntry, ValidationError]:
    """Validate a raw entry and return its normalized variant.

    Args:
        raw: Entry fields as submitted (``entry_category``, ``entry_date``,
            ``hours``, ``is_billable``, ``billable_hours`` and the
            category payload).

    Returns:
        ``Ok(NormalizedEntry)`` or ``Err(ValidationError)``; an unknown
        category yields ``Err(InvalidCategoryError)``.
    """
    try:
        return Ok(_classify(raw))
    except _Rejected as rejected:
        return Err(rejected.error)


def entry_columns(entry: NormalizedEntry) -> dict[str, Any]:
    """Map a normalized entry onto ``TimeEntry`` column values.

    Payload columns that do not belong to the variant are cleared.
    """
    columns: dict[str, Any] = {
        "entry_category": entry.category.value,
        "entry_date": entry.entry_date,
        "hours": entry.hours,
        "is_billable": entry.is_billable,
        "billable_hours": entry.billable_hours,
        "hourly_rate": entry.hourly_rate,
        "description": entry.description,
        "project_id": None,
        "task_id": None,
        "custom_task_description": None,
        "leave_session": None,
        "holiday_name": None,
        "miscellaneous_activity": None,
    }
    if isinstance(entry, (ProjectEntry, TrainingEntry)):
        columns["project_id"] = entry.project_id
        if isinstance(entry.task, ExistingTask):
            columns["task_id"] = entry.task.task_id
        else:
            columns["custom_task_description"] = entry.task.description
    elif isinstance(entry, LeaveEntry):
        columns["leave_session"] = entry.session.value
    elif isinstance(entry, HolidayEntry):
        columns["holiday_name"] = entry.holiday_name
    elif isinstance(entry, MiscellaneousEntry):
        columns["miscellaneous_activity"] = entry.activity
    return columns
