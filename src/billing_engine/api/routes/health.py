"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import literal, select, text
from sqlalchemy.exc import SQLAlchemyError

from billing_engine.api.dependencies import DbSession
from billing_engine.models import (
    BillingAdjustment,
    BillingSnapshot,
    TimeEntry,
    Timesheet,
    TimesheetProjectApproval,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession) -> HealthResponse:
    """Check API and database health."""
    db_status = "unhealthy"
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError:
        logger.exception("Database health check failed")

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=db_status,
    )


class ReadinessResponse(BaseModel):
    """Readiness response with the state of each billing table."""

    status: str
    tables: dict[str, str]


# Tables every billing read or write touches
BILLING_TABLES = (
    Timesheet.__table__,
    TimeEntry.__table__,
    TimesheetProjectApproval.__table__,
    BillingAdjustment.__table__,
    BillingSnapshot.__table__,
)


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(db: DbSession, response: Response) -> ReadinessResponse:
    """Ready once every billing table answers a query.

    Responds 503 while any of them is missing or unreachable.
    """
    tables: dict[str, str] = {}
    for table in BILLING_TABLES:
        try:
            await db.execute(select(literal(1)).select_from(table).limit(1))
            tables[table.name] = "ok"
        except SQLAlchemyError:
            logger.exception("Readiness check failed for table %s", table.name)
            tables[table.name] = "unavailable"
            await db.rollback()

    ready = all(state == "ok" for state in tables.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status="ready" if ready else "not_ready", tables=tables)


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
