"""Billing aggregation and adjustment endpoints."""

from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from billing_engine.api.dependencies import ActorId, Services
from billing_engine.api.schemas import (
    AdjustmentListResponse,
    AdjustmentResponse,
    AggregationResponse,
    BillableTargetRequest,
    BreakdownResponse,
    ErrorResponse,
    ProjectTargetRequest,
)
from billing_engine.calculators.periods import Granularity, ViewMode
from billing_engine.calculators.types import AggregationFilters
from billing_engine.errors import ValidationError

router = APIRouter(prefix="/billing", tags=["billing"])

# A breakdown drills one level below the view it was opened from
BREAKDOWN_VIEW = {
    Granularity.WEEKLY: ViewMode.MONTHLY,
    Granularity.MONTHLY: ViewMode.TIMELINE,
}


# ============================================================================
# Queries
# ============================================================================


@router.get(
    "/aggregation",
    response_model=AggregationResponse,
    responses={400: {"model": ErrorResponse}},
)
async def get_aggregation(
    services: Services,
    start_date: Annotated[date | None, Query(alias="startDate")] = None,
    end_date: Annotated[date | None, Query(alias="endDate")] = None,
    view: Annotated[str, Query()] = ViewMode.MONTHLY.value,
    project_ids: Annotated[list[UUID] | None, Query(alias="projectIds")] = None,
    client_ids: Annotated[list[UUID] | None, Query(alias="clientIds")] = None,
    user_ids: Annotated[list[UUID] | None, Query(alias="userIds")] = None,
    roles: Annotated[list[str] | None, Query()] = None,
    search: Annotated[str | None, Query()] = None,
    group_by: Annotated[str, Query(alias="groupBy")] = "project",
) -> AggregationResponse:
    """Hierarchical billing rows plus summary totals.

    A failed or timed-out query still answers 200 with ``error`` set.
    """
    filters = AggregationFilters(
        project_ids=project_ids or [],
        client_ids=client_ids or [],
        user_ids=user_ids or [],
        roles=roles or [],
        search=search,
    )
    result = await services.engine.aggregate(
        view=view,
        start=start_date,
        end=end_date,
        filters=filters,
        group_by=group_by,
    )
    return AggregationResponse.model_validate(result)


@router.get(
    "/breakdown",
    response_model=BreakdownResponse,
    responses={400: {"model": ErrorResponse}},
)
async def get_breakdown(
    services: Services,
    project_id: Annotated[UUID, Query(alias="projectId")],
    user_id: Annotated[UUID, Query(alias="userId")],
    start_date: Annotated[date, Query(alias="startDate")],
    end_date: Annotated[date, Query(alias="endDate")],
    granularity: Annotated[str, Query()] = Granularity.WEEKLY.value,
) -> BreakdownResponse:
    """Per-week or per-month rows for one (project, user) aggregate."""
    try:
        view = BREAKDOWN_VIEW[Granularity(granularity)]
    except ValueError:
        raise ValidationError(
            f"Invalid granularity '{granularity}'", {"granularity": granularity}
        )
    result = await services.breakdown.breakdown(
        project_id=project_id,
        user_id=user_id,
        start=start_date,
        end=end_date,
        view=view,
    )
    return BreakdownResponse.model_validate(result)


# ============================================================================
# Adjustments
# ============================================================================


@router.put(
    "/adjustments",
    response_model=AdjustmentResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def put_adjustment(
    services: Services,
    actor_id: ActorId,
    payload: BillableTargetRequest,
) -> AdjustmentResponse:
    """Set a user's billable hours for a period, optionally for one project."""
    result = await services.ledger.apply_billable_target(
        user_id=payload.user_id,
        start=payload.start_date,
        end=payload.end_date,
        billable_hours=payload.billable_hours,
        actor_id=actor_id,
        project_id=payload.project_id,
        task_id=payload.task_id,
        total_hours=payload.total_hours,
        reason=payload.reason,
    )
    return AdjustmentResponse.model_validate(result.unwrap())


@router.delete(
    "/adjustments/{adjustment_id}",
    response_model=AdjustmentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def delete_adjustment(
    services: Services,
    actor_id: ActorId,
    adjustment_id: Annotated[UUID, Path()],
) -> AdjustmentResponse:
    """Soft-delete an adjustment."""
    result = await services.ledger.delete_adjustment(adjustment_id, actor_id)
    return AdjustmentResponse.model_validate(result.unwrap())


@router.put(
    "/projects/{project_id}/billable-total",
    response_model=AdjustmentListResponse,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def put_project_billable_total(
    services: Services,
    actor_id: ActorId,
    project_id: Annotated[UUID, Path()],
    payload: ProjectTargetRequest,
) -> AdjustmentListResponse:
    """Spread a project's billable total across its resources."""
    result = await services.ledger.distribute_project_target(
        project_id=project_id,
        start=payload.start_date,
        end=payload.end_date,
        target=payload.billable_hours,
        actor_id=actor_id,
    )
    written = result.unwrap()
    return AdjustmentListResponse(
        items=[AdjustmentResponse.model_validate(a) for a in written],
        total=len(written),
    )
