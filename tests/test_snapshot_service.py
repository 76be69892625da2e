"""Tests for weekly snapshot generation and the snapshot lifecycle."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.errors import ConflictError, NotFoundError, ValidationError

WEEK = date(2024, 3, 4)
ACTOR = uuid4()


@pytest.fixture
async def frozen_week(test_users, test_projects, make_timesheet, log_hours):
    """Alice and Bob both have a frozen timesheet for the week of March 4."""
    alice, bob = test_users["alice"], test_users["bob"]
    apollo = test_projects["apollo"]

    alice_ts = await make_timesheet(alice, WEEK, status="frozen")
    await log_hours(alice_ts, apollo, "16")
    bob_ts = await make_timesheet(bob, WEEK, status="billed")
    await log_hours(bob_ts, apollo, "8")
    # Not yet frozen, so never snapshotted
    await make_timesheet(alice, date(2024, 3, 11), status="submitted")
    return {"alice": alice_ts, "bob": bob_ts}


def _by_timesheet(result):
    return {o.snapshot.timesheet_id: o for o in result.outcomes}


class TestGeneration:
    @pytest.mark.asyncio
    async def test_creates_one_snapshot_per_timesheet(self, bundle, frozen_week):
        result = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)

        assert result.success
        assert len(result.outcomes) == 2
        alice = _by_timesheet(result)[frozen_week["alice"].timesheet_id]
        assert alice.status == "created"
        snapshot = alice.snapshot
        assert snapshot.total_hours == Decimal("16.00")
        assert snapshot.billable_hours == Decimal("16.00")
        assert snapshot.hourly_rate == Decimal("100.00")
        assert snapshot.billable_amount == Decimal("1600.00")
        assert snapshot.week_end_date == date(2024, 3, 10)
        assert snapshot.snapshot_data["timesheet_status"] == "frozen"

    @pytest.mark.asyncio
    async def test_regeneration_without_changes_reuses_snapshot(self, bundle, frozen_week):
        first = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)
        second = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)

        assert {o.status for o in second.outcomes} == {"unchanged"}
        assert {s.snapshot_id for s in second.snapshots} == {
            s.snapshot_id for s in first.snapshots
        }

    @pytest.mark.asyncio
    async def test_changed_figures_supersede_live_snapshot(
        self, bundle, frozen_week, test_projects, make_entry
    ):
        """The old snapshot is soft-deleted and a new one takes its place."""
        alice_ts = frozen_week["alice"]
        first = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)
        old = _by_timesheet(first)[alice_ts.timesheet_id].snapshot
        old_id = old.snapshot_id

        await make_entry(alice_ts, test_projects["apollo"], "4", day_offset=3)
        second = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)

        outcome = _by_timesheet(second)[alice_ts.timesheet_id]
        assert outcome.status == "superseded"
        assert outcome.superseded_id == old_id
        assert outcome.snapshot.snapshot_id != old_id
        assert outcome.snapshot.total_hours == Decimal("20.00")
        assert old.deleted_at is not None

        visible = await bundle.snapshots.list_snapshots()
        assert old_id not in {s.snapshot_id for s in visible}
        everything = await bundle.snapshots.list_snapshots(include_deleted=True)
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_zero_rate_user_fails_alone(self, bundle, session, frozen_week, test_users):
        test_users["bob"].hourly_rate = Decimal("0")
        await session.flush()

        result = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)

        assert not result.success
        (failure,) = result.failures
        assert failure.timesheet_id == frozen_week["bob"].timesheet_id
        assert failure.code == "VALIDATION_ERROR"
        assert [o.snapshot.timesheet_id for o in result.outcomes] == [
            frozen_week["alice"].timesheet_id
        ]

    @pytest.mark.asyncio
    async def test_week_must_start_on_monday(self, bundle, frozen_week):
        with pytest.raises(ValidationError):
            await bundle.snapshots.generate_weekly_snapshot(date(2024, 3, 6), ACTOR)

    @pytest.mark.asyncio
    async def test_empty_week(self, bundle, frozen_week):
        result = await bundle.snapshots.generate_weekly_snapshot(date(2024, 4, 1), ACTOR)

        assert result.success
        assert result.outcomes == []


class TestLifecycle:
    @pytest.fixture
    async def snapshot(self, bundle, frozen_week):
        result = await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)
        return _by_timesheet(result)[frozen_week["alice"].timesheet_id].snapshot

    @pytest.mark.asyncio
    async def test_soft_delete_and_restore(self, bundle, snapshot):
        deleted = await bundle.snapshots.soft_delete_snapshot(snapshot.snapshot_id, ACTOR)
        assert deleted.deleted_by == ACTOR
        with pytest.raises(NotFoundError):
            await bundle.snapshots.get_snapshot(snapshot.snapshot_id)

        restored = await bundle.snapshots.restore_snapshot(snapshot.snapshot_id, ACTOR)

        assert restored.deleted_at is None
        assert (await bundle.snapshots.get_snapshot(snapshot.snapshot_id)) is restored

    @pytest.mark.asyncio
    async def test_restore_live_snapshot_rejected(self, bundle, snapshot):
        with pytest.raises(ValidationError):
            await bundle.snapshots.restore_snapshot(snapshot.snapshot_id, ACTOR)

    @pytest.mark.asyncio
    async def test_hard_delete_requires_soft_delete(self, bundle, snapshot):
        with pytest.raises(ValidationError):
            await bundle.snapshots.hard_delete_snapshot(snapshot.snapshot_id, ACTOR)

    @pytest.mark.asyncio
    async def test_hard_deleted_snapshot_is_gone(self, bundle, snapshot):
        await bundle.snapshots.soft_delete_snapshot(snapshot.snapshot_id, ACTOR)
        await bundle.snapshots.hard_delete_snapshot(snapshot.snapshot_id, ACTOR)

        everything = await bundle.snapshots.list_snapshots(include_deleted=True)
        assert snapshot.snapshot_id not in {s.snapshot_id for s in everything}
        with pytest.raises(NotFoundError):
            await bundle.snapshots.restore_snapshot(snapshot.snapshot_id, ACTOR)
        with pytest.raises(NotFoundError):
            await bundle.snapshots.hard_delete_snapshot(snapshot.snapshot_id, ACTOR)

    @pytest.mark.asyncio
    async def test_restore_conflicts_with_newer_snapshot(
        self, bundle, snapshot, frozen_week, test_projects, make_entry
    ):
        await make_entry(frozen_week["alice"], test_projects["apollo"], "2", day_offset=4)
        await bundle.snapshots.generate_weekly_snapshot(WEEK, ACTOR)

        with pytest.raises(ConflictError):
            await bundle.snapshots.restore_snapshot(snapshot.snapshot_id, ACTOR)
