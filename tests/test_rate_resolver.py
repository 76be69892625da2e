"""Tests for billing rate resolution."""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.calculators.rate_resolver import RateResolver
from billing_engine.errors import NotFoundError
from billing_engine.models import Project, Task, TimeEntry, User


@pytest.fixture
def catalog():
    user = User(user_id=uuid4(), full_name="Alice", email="a@example.com", hourly_rate=Decimal("100"))
    plain = Project(project_id=uuid4(), name="Plain")
    premium = Project(project_id=uuid4(), name="Premium", hourly_rate=Decimal("150"))
    task = Task(task_id=uuid4(), project_id=premium.project_id, name="Audit", hourly_rate=Decimal("175"))
    resolver = RateResolver(
        {user.user_id: user},
        {plain.project_id: plain, premium.project_id: premium},
        {task.task_id: task},
    )
    return resolver, user, plain, premium, task


class TestRateResolver:
    """Most specific rate wins."""

    def test_cell_uses_user_rate_without_override(self, catalog):
        resolver, user, plain, _, _ = catalog

        assert resolver.resolve_for_cell(plain.project_id, user.user_id) == Decimal("100.00")

    def test_cell_uses_project_override(self, catalog):
        resolver, user, _, premium, _ = catalog

        assert resolver.resolve_for_cell(premium.project_id, user.user_id) == Decimal("150.00")

    def test_entry_precedence(self, catalog):
        resolver, user, _, premium, task = catalog
        entry = TimeEntry(project_id=premium.project_id, task_id=task.task_id, hourly_rate=None)

        assert resolver.resolve_for_entry(entry, user.user_id) == Decimal("175.00")

        entry.hourly_rate = Decimal("90")
        assert resolver.resolve_for_entry(entry, user.user_id) == Decimal("90.00")

    def test_entry_without_task_falls_back_to_project(self, catalog):
        resolver, user, _, premium, _ = catalog
        entry = TimeEntry(project_id=premium.project_id, task_id=None, hourly_rate=None)

        assert resolver.resolve_for_entry(entry, user.user_id) == Decimal("150.00")

    def test_unknown_user(self, catalog):
        resolver, _, plain, _, _ = catalog
        missing = uuid4()

        with pytest.raises(NotFoundError) as exc_info:
            resolver.resolve_for_cell(plain.project_id, missing)

        assert exc_info.value.entity_id == missing
