"""Tests for the adjustment ledger."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from billing_engine.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProjectLockedError,
    ValidationError,
)
from billing_engine.models import AuditEvent, BillingAdjustment
from billing_engine.result import Err, Ok
from billing_engine.services import AdjustmentRequest

MARCH_4 = date(2024, 3, 4)
ACTOR = uuid4()


def _request(timesheet, worked="40", delta="-5", scope="project", project=None, **kwargs):
    return AdjustmentRequest(
        timesheet_id=timesheet.timesheet_id,
        scope=scope,
        billing_period_start=timesheet.week_start_date,
        billing_period_end=timesheet.week_end_date,
        total_worked_hours=Decimal(worked),
        adjustment_hours=Decimal(delta),
        reason="Client review",
        project_id=project.project_id if project is not None else None,
        **kwargs,
    )


async def _live_count(session, timesheet) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(BillingAdjustment)
        .where(
            BillingAdjustment.timesheet_id == timesheet.timesheet_id,
            BillingAdjustment.deleted_at.is_(None),
        )
    )


async def _resource_billable(bundle, project, user, start=date(2024, 3, 1), end=date(2024, 3, 31)):
    result = await bundle.engine.aggregate("monthly", start, end)
    for record in result.projects:
        if record.project_id == project.project_id:
            for row in record.resources:
                if row.user_id == user.user_id:
                    return row.billable_hours
    return None


class TestUpsertAdjustment:
    """Creation, update and the live scope key."""

    @pytest.mark.asyncio
    async def test_adjustment_persists_across_new_hours(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        """Worked 40 with -5 bills 35; after 20 more hours the same delta bills 55."""
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")

        result = await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)

        assert isinstance(result, Ok)
        adjustment = result.value
        assert adjustment.total_billable_hours == Decimal("35.00")
        assert await _resource_billable(bundle, apollo, alice) == Decimal("35.00")

        await log_hours(timesheet, apollo, "20")
        recomputed = await bundle.ledger.recompute(timesheet.timesheet_id)

        assert isinstance(recomputed, Ok)
        assert adjustment.adjustment_hours == Decimal("-5.00")
        assert adjustment.total_worked_hours == Decimal("60.00")
        assert adjustment.total_billable_hours == Decimal("55.00")
        assert await _resource_billable(bundle, apollo, alice) == Decimal("55.00")

    @pytest.mark.asyncio
    async def test_scope_switch_clears_project(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        """Moving a project adjustment to timesheet scope detaches it from the project."""
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")
        created = (
            await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)
        ).unwrap()

        result = await bundle.ledger.upsert_adjustment(
            _request(timesheet, scope="timesheet", project=apollo),
            ACTOR,
            adjustment_id=created.adjustment_id,
        )

        updated = result.unwrap()
        assert updated.adjustment_id == created.adjustment_id
        assert updated.scope == "timesheet"
        assert updated.project_id is None
        assert updated.scope_key.endswith(":timesheet:-")
        assert await _resource_billable(bundle, apollo, alice) == Decimal("40.00")

        users = await bundle.engine.aggregate(
            "monthly", date(2024, 3, 1), date(2024, 3, 31), group_by="user"
        )
        (record,) = users.users
        assert record.billable_hours == Decimal("35.00")
        assert record.timesheet_adjustment_effect == Decimal("-5.00")

    @pytest.mark.asyncio
    async def test_second_write_updates_live_row(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")

        first = (await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)).unwrap()
        second = (
            await bundle.ledger.upsert_adjustment(
                _request(timesheet, project=apollo, delta="-8"), ACTOR
            )
        ).unwrap()

        assert second.adjustment_id == first.adjustment_id
        assert second.total_billable_hours == Decimal("32.00")
        assert await _live_count(session, timesheet) == 1

    @pytest.mark.asyncio
    async def test_mirror_fields_written_once(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")

        await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)
        updated = (
            await bundle.ledger.upsert_adjustment(
                _request(timesheet, project=apollo, delta="2"), ACTOR
            )
        ).unwrap()

        assert updated.original_billable_hours == Decimal("40.00")
        assert updated.adjusted_billable_hours == Decimal("35.00")
        assert updated.total_billable_hours == Decimal("42.00")

    @pytest.mark.asyncio
    async def test_write_is_audited(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "8")

        adjustment = (
            await bundle.ledger.upsert_adjustment(
                _request(timesheet, worked="8", project=apollo), ACTOR
            )
        ).unwrap()
        await session.flush()

        events = (
            await session.execute(
                select(AuditEvent).where(AuditEvent.entity_id == adjustment.adjustment_id)
            )
        ).scalars().all()
        assert [e.action for e in events] == ["create"]
        assert events[0].actor_user_id == ACTOR


class TestUpsertRejections:
    """Typed failures leave nothing behind."""

    @pytest.mark.asyncio
    async def test_locked_project_rejected(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, legacy = test_users["alice"], test_projects["legacy"]
        timesheet = await make_timesheet(alice, date(2024, 2, 5))
        await log_hours(timesheet, legacy, "16")

        result = await bundle.ledger.upsert_adjustment(
            _request(timesheet, worked="16", project=legacy), ACTOR
        )

        assert isinstance(result, Err)
        assert isinstance(result.error, ProjectLockedError)
        assert isinstance(result.error, AuthorizationError)
        assert await _live_count(session, timesheet) == 0

    @pytest.mark.asyncio
    async def test_project_scope_requires_project(
        self, session, bundle, test_users, make_timesheet
    ):
        timesheet = await make_timesheet(test_users["alice"], MARCH_4)

        result = await bundle.ledger.upsert_adjustment(_request(timesheet), ACTOR)

        assert isinstance(result, Err)
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_negative_worked_hours_rejected(
        self, session, bundle, test_users, test_projects, make_timesheet
    ):
        timesheet = await make_timesheet(test_users["alice"], MARCH_4)

        result = await bundle.ledger.upsert_adjustment(
            _request(timesheet, worked="-1", project=test_projects["apollo"]), ACTOR
        )

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_unknown_timesheet(self, session, bundle, test_projects):
        request = AdjustmentRequest(
            timesheet_id=uuid4(),
            scope="timesheet",
            billing_period_start=MARCH_4,
            billing_period_end=MARCH_4,
            total_worked_hours=Decimal("8"),
            adjustment_hours=Decimal("1"),
        )

        result = await bundle.ledger.upsert_adjustment(request, ACTOR)

        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_task_must_belong_to_project(
        self, session, bundle, test_users, test_projects, test_tasks, make_timesheet
    ):
        timesheet = await make_timesheet(test_users["alice"], MARCH_4)

        result = await bundle.ledger.upsert_adjustment(
            _request(
                timesheet,
                project=test_projects["apollo"],
                task_id=test_tasks["research"].task_id,
            ),
            ACTOR,
        )

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_lost_race_exhausts_retries(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours, monkeypatch
    ):
        """A writer that never sees the live row keeps colliding and gives up."""
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")
        await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)

        calls = 0

        async def blind_lookup(scope_key):
            nonlocal calls
            calls += 1
            return None

        monkeypatch.setattr(bundle.ledger.adjustments, "find_live", blind_lookup)

        result = await bundle.ledger.upsert_adjustment(
            _request(timesheet, project=apollo, delta="-1"), ACTOR
        )

        assert isinstance(result, Err)
        assert isinstance(result.error, ConflictError)
        assert calls == 3
        assert await _live_count(session, timesheet) == 1


    @pytest.mark.asyncio
    async def test_lost_insert_retries_as_update(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours, monkeypatch
    ):
        """A writer that misses the live row once collides, then updates it."""
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")
        first = (
            await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)
        ).unwrap()
        first_id = first.adjustment_id

        real_lookup = bundle.ledger.adjustments.find_live
        calls = 0

        async def stale_once(scope_key):
            nonlocal calls
            calls += 1
            if calls == 1:
                return None
            return await real_lookup(scope_key)

        monkeypatch.setattr(bundle.ledger.adjustments, "find_live", stale_once)

        result = await bundle.ledger.upsert_adjustment(
            _request(timesheet, project=apollo, delta="-8"), ACTOR
        )

        assert isinstance(result, Ok)
        assert result.value.adjustment_id == first_id
        assert result.value.adjustment_hours == Decimal("-8.00")
        assert result.value.total_billable_hours == Decimal("32.00")
        assert calls == 2
        assert await _live_count(session, timesheet) == 1

class TestDeleteAdjustment:
    @pytest.mark.asyncio
    async def test_soft_delete_restores_baseline(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")
        adjustment = (
            await bundle.ledger.upsert_adjustment(_request(timesheet, project=apollo), ACTOR)
        ).unwrap()

        result = await bundle.ledger.delete_adjustment(adjustment.adjustment_id, ACTOR)

        assert isinstance(result, Ok)
        assert result.value.deleted_at is not None
        assert result.value.deleted_by == ACTOR
        assert await _live_count(session, timesheet) == 0
        assert await _resource_billable(bundle, apollo, alice) == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_delete_unknown(self, session, bundle):
        result = await bundle.ledger.delete_adjustment(uuid4(), ACTOR)

        assert isinstance(result.error, NotFoundError)


class TestBillableTargets:
    """Setting billable totals through the ledger."""

    @pytest.mark.asyncio
    async def test_apply_billable_target_for_project(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, apollo = test_users["alice"], test_projects["apollo"]
        timesheet = await make_timesheet(alice, MARCH_4)
        await log_hours(timesheet, apollo, "40")

        result = await bundle.ledger.apply_billable_target(
            alice.user_id,
            date(2024, 3, 1),
            date(2024, 3, 31),
            Decimal("30"),
            ACTOR,
            project_id=apollo.project_id,
        )

        adjustment = result.unwrap()
        assert adjustment.timesheet_id == timesheet.timesheet_id
        assert adjustment.total_worked_hours == Decimal("40.00")
        assert adjustment.adjustment_hours == Decimal("-10.00")
        assert await _resource_billable(bundle, apollo, alice) == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_apply_billable_target_on_locked_project(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        alice, legacy = test_users["alice"], test_projects["legacy"]
        timesheet = await make_timesheet(alice, date(2024, 2, 5))
        await log_hours(timesheet, legacy, "16")

        result = await bundle.ledger.apply_billable_target(
            alice.user_id,
            date(2024, 2, 1),
            date(2024, 2, 29),
            Decimal("10"),
            ACTOR,
            project_id=legacy.project_id,
        )

        assert isinstance(result.error, ProjectLockedError)

    @pytest.mark.asyncio
    async def test_apply_billable_target_without_timesheet(
        self, session, bundle, test_users, test_projects
    ):
        result = await bundle.ledger.apply_billable_target(
            test_users["alice"].user_id,
            date(2024, 3, 1),
            date(2024, 3, 31),
            Decimal("10"),
            ACTOR,
        )

        assert isinstance(result.error, NotFoundError)

    @pytest.mark.asyncio
    async def test_distribute_project_target(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours
    ):
        """Lowering a project total takes hours from the largest resource."""
        alice, bob, apollo = test_users["alice"], test_users["bob"], test_projects["apollo"]
        await log_hours(await make_timesheet(alice, MARCH_4), apollo, "40")
        await log_hours(await make_timesheet(bob, MARCH_4), apollo, "20")

        result = await bundle.ledger.distribute_project_target(
            apollo.project_id, date(2024, 3, 1), date(2024, 3, 31), Decimal("30"), ACTOR
        )

        written = result.unwrap()
        assert [a.user_id for a in written] == [alice.user_id]
        aggregate = await bundle.engine.aggregate("monthly", date(2024, 3, 1), date(2024, 3, 31))
        (record,) = aggregate.projects
        assert record.billable_hours == Decimal("30.00")
        billable = {r.user_id: r.billable_hours for r in record.resources}
        assert billable == {alice.user_id: Decimal("10.00"), bob.user_id: Decimal("20.00")}

    @pytest.mark.asyncio
    async def test_distribute_without_resources(self, session, bundle, test_projects):
        result = await bundle.ledger.distribute_project_target(
            test_projects["apollo"].project_id,
            date(2024, 3, 1),
            date(2024, 3, 31),
            Decimal("30"),
            ACTOR,
        )

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_distribute_failure_discards_earlier_writes(
        self, session, bundle, test_users, test_projects, make_timesheet, log_hours, monkeypatch
    ):
        """An unexpected error part-way through leaves no adjustment behind."""
        alice, bob, apollo = test_users["alice"], test_users["bob"], test_projects["apollo"]
        alice_ts = await make_timesheet(alice, MARCH_4)
        bob_ts = await make_timesheet(bob, MARCH_4)
        await log_hours(alice_ts, apollo, "40")
        await log_hours(bob_ts, apollo, "20")

        real_apply = bundle.ledger.apply_billable_target
        calls = 0

        async def fail_on_second(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("connection dropped")
            return await real_apply(*args, **kwargs)

        monkeypatch.setattr(bundle.ledger, "apply_billable_target", fail_on_second)

        with pytest.raises(RuntimeError):
            await bundle.ledger.distribute_project_target(
                apollo.project_id, date(2024, 3, 1), date(2024, 3, 31), Decimal("0"), ACTOR
            )

        assert calls == 2
        assert await _live_count(session, alice_ts) == 0
        assert await _live_count(session, bob_ts) == 0
