"""Project adjustment lock policy."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from billing_engine.errors import ProjectLockedError

if TYPE_CHECKING:
    from billing_engine.models import Project


class ProjectLockPolicy:
    """Marks projects whose end date has passed as read-only for adjustments.

    The check is advisory: it is evaluated fresh against the reference date
    on every call and holds no lock. Locked projects stay fully readable.
    """

    @staticmethod
    def _day(reference: date | datetime) -> date:
        if isinstance(reference, datetime):
            return reference.date()
        return reference

    @classmethod
    def is_locked(cls, end_date: date | None, reference: date | datetime) -> bool:
        """True when an end date is set and falls before the reference day."""
        if end_date is None:
            return False
        return end_date < cls._day(reference)

    @classmethod
    def is_project_locked(cls, project: Project, reference: date | datetime) -> bool:
        return cls.is_locked(project.end_date, reference)

    @classmethod
    def assert_writable(cls, project: Project, reference: date | datetime) -> None:
        """Raise if adjustments against the project are locked.

        Raises:
            ProjectLockedError: If the project's end date has passed.
        """
        if cls.is_project_locked(project, reference):
            raise ProjectLockedError(project.project_id, project.end_date)
