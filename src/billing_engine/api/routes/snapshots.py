"""Weekly billing snapshot endpoints."""

from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from billing_engine.api.dependencies import ActorId, Services
from billing_engine.api.schemas import (
    ErrorResponse,
    SnapshotGenerateRequest,
    SnapshotGenerateResponse,
    SnapshotListResponse,
    SnapshotResponse,
)

router = APIRouter(prefix="/billing/snapshots", tags=["snapshots"])


@router.post(
    "/generate",
    response_model=SnapshotGenerateResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}},
)
async def generate_snapshots(
    services: Services,
    actor_id: ActorId,
    payload: SnapshotGenerateRequest,
) -> SnapshotGenerateResponse:
    """Snapshot every frozen or billed timesheet of a week.

    Per-timesheet failures are listed in ``failures``; the rest still commit.
    """
    result = await services.snapshots.generate_weekly_snapshot(payload.week_start_date, actor_id)
    return SnapshotGenerateResponse.model_validate(result)


@router.get("", response_model=SnapshotListResponse)
async def list_snapshots(
    services: Services,
    include_deleted: Annotated[bool, Query(alias="includeDeleted")] = False,
    week_start_date: Annotated[date | None, Query(alias="weekStartDate")] = None,
) -> SnapshotListResponse:
    snapshots = await services.snapshots.list_snapshots(include_deleted, week_start_date)
    return SnapshotListResponse(
        items=[SnapshotResponse.model_validate(s) for s in snapshots],
        total=len(snapshots),
    )


@router.delete(
    "/{snapshot_id}",
    response_model=SnapshotResponse,
    responses={404: {"model": ErrorResponse}},
)
async def soft_delete_snapshot(
    services: Services,
    actor_id: ActorId,
    snapshot_id: Annotated[UUID, Path()],
) -> SnapshotResponse:
    """Hide a snapshot from default reads; it can be restored."""
    snapshot = await services.snapshots.soft_delete_snapshot(snapshot_id, actor_id)
    return SnapshotResponse.model_validate(snapshot)


@router.post(
    "/{snapshot_id}/restore",
    response_model=SnapshotResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def restore_snapshot(
    services: Services,
    actor_id: ActorId,
    snapshot_id: Annotated[UUID, Path()],
) -> SnapshotResponse:
    snapshot = await services.snapshots.restore_snapshot(snapshot_id, actor_id)
    return SnapshotResponse.model_validate(snapshot)


@router.delete(
    "/{snapshot_id}/hard",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def hard_delete_snapshot(
    services: Services,
    actor_id: ActorId,
    snapshot_id: Annotated[UUID, Path()],
) -> None:
    """Permanently remove a soft-deleted snapshot."""
    await services.snapshots.hard_delete_snapshot(snapshot_id, actor_id)
