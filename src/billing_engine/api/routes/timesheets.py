"""Time entry endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from billing_engine.api.dependencies import ActorId, Services
from billing_engine.api.schemas import ErrorResponse, TimeEntryRequest, TimeEntryResponse

router = APIRouter(prefix="/timesheets", tags=["timesheets"])

ENTRY_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


@router.post(
    "/{timesheet_id}/entries",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ENTRY_ERRORS,
)
async def add_entry(
    services: Services,
    actor_id: ActorId,
    timesheet_id: Annotated[UUID, Path()],
    payload: TimeEntryRequest,
) -> TimeEntryResponse:
    """Classify and store a time entry on an editable timesheet."""
    result = await services.entries.add_entry(
        timesheet_id, payload.model_dump(exclude_none=True), actor_id
    )
    return TimeEntryResponse.model_validate(result.unwrap())


@router.put(
    "/entries/{entry_id}",
    response_model=TimeEntryResponse,
    responses=ENTRY_ERRORS,
)
async def update_entry(
    services: Services,
    actor_id: ActorId,
    entry_id: Annotated[UUID, Path()],
    payload: TimeEntryRequest,
) -> TimeEntryResponse:
    result = await services.entries.update_entry(
        entry_id, payload.model_dump(exclude_none=True), actor_id
    )
    return TimeEntryResponse.model_validate(result.unwrap())


@router.delete(
    "/entries/{entry_id}",
    response_model=TimeEntryResponse,
    responses=ENTRY_ERRORS,
)
async def delete_entry(
    services: Services,
    actor_id: ActorId,
    entry_id: Annotated[UUID, Path()],
) -> TimeEntryResponse:
    """Soft-delete a time entry."""
    result = await services.entries.delete_entry(entry_id, actor_id)
    return TimeEntryResponse.model_validate(result.unwrap())
