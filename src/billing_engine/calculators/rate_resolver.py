"""Hourly rate resolution with most-specific-wins matching."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Mapping
from uuid import UUID

from billing_engine.calculators.types import quantize
from billing_engine.errors import NotFoundError

if TYPE_CHECKING:
    from billing_engine.models import Project, Task, TimeEntry, User


class RateResolver:
    """Resolves billing rates from already-loaded catalog rows.

    Entry rate selection priority:
    1. The entry's own ``hourly_rate``
    2. The task's rate override
    3. The project's rate override
    4. The user's directory rate

    Project/user cells skip the first two levels.
    """

    def __init__(
        self,
        users: Mapping[UUID, User],
        projects: Mapping[UUID, Project],
        tasks: Mapping[UUID, Task] | None = None,
    ):
        self.users = users
        self.projects = projects
        self.tasks = tasks or {}

    def user_rate(self, user_id: UUID) -> Decimal:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return quantize(user.hourly_rate)

    def resolve_for_cell(self, project_id: UUID | None, user_id: UUID) -> Decimal:
        """Rate for a (project, user) aggregate: project override, else user."""
        project = self.projects.get(project_id) if project_id is not None else None
        if project is not None and project.hourly_rate is not None:
            return quantize(project.hourly_rate)
        return self.user_rate(user_id)

    def resolve_for_entry(self, entry: TimeEntry, user_id: UUID) -> Decimal:
        """Rate for a single time entry.

        Raises:
            NotFoundError: If the user is not in the directory.
        """
        if entry.hourly_rate is not None:
            return quantize(entry.hourly_rate)

        task = self.tasks.get(entry.task_id) if entry.task_id is not None else None
        if task is not None and task.hourly_rate is not None:
            return quantize(task.hourly_rate)

        return self.resolve_for_cell(entry.project_id, user_id)
