"""Per-period drill-down of one (project, user) aggregate."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from uuid import UUID

from billing_engine.calculators.periods import (
    DateRange,
    Granularity,
    ViewMode,
    breakdown_granularity,
    split_range,
)
from billing_engine.calculators.types import (
    AggregationFilters,
    BreakdownPeriod,
    BreakdownResult,
    quantize,
)
from billing_engine.errors import BillingError
from billing_engine.result import Err, Ok, Result
from billing_engine.services.aggregation import AggregationEngine

logger = logging.getLogger(__name__)


def period_label(period: DateRange, granularity: Granularity) -> str:
    if granularity == Granularity.MONTHLY:
        return period.start.strftime("%B %Y")
    return f"{period.start.strftime('%b %d')} - {period.end.strftime('%b %d, %Y')}"


class BreakdownResolver:
    """Splits a range into weeks or months and aggregates each one.

    Every period goes through ``AggregationEngine.aggregate``; periods
    partition the range, so the trailing total equals a single aggregate
    call over the whole range.
    """

    def __init__(self, engine: AggregationEngine):
        self.engine = engine

    async def breakdown(
        self,
        project_id: UUID,
        user_id: UUID,
        start: date,
        end: date,
        view: ViewMode | str,
        timeout: float | None = None,
    ) -> BreakdownResult:
        """Drill one level finer than ``view``.

        Raises:
            ValidationError: If ``view`` is weekly or the range is inverted.
        """
        granularity = breakdown_granularity(view)
        date_range = DateRange(start, end)
        result = BreakdownResult(
            project_id=project_id,
            user_id=user_id,
            granularity=granularity,
            date_range=date_range,
        )
        timeout = self.engine.timeout_seconds if timeout is None else timeout

        try:
            periods = await asyncio.wait_for(
                self._periods(project_id, user_id, date_range, granularity), timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Breakdown timed out after %ss (project=%s user=%s)", timeout, project_id, user_id
            )
            await self.engine.recover_session()
            result.error = f"Breakdown timed out after {timeout}s"
            return result

        if isinstance(periods, Err):
            result.error = periods.error.message
            return result

        result.periods = periods.value
        total = BreakdownPeriod(
            label="Total",
            start_date=date_range.start,
            end_date=date_range.end,
        )
        for period in result.periods:
            total.worked_hours = quantize(total.worked_hours + period.worked_hours)
            total.billable_hours = quantize(total.billable_hours + period.billable_hours)
            total.amount = quantize(total.amount + period.amount)
        result.total = total
        return result

    async def _periods(
        self,
        project_id: UUID,
        user_id: UUID,
        date_range: DateRange,
        granularity: Granularity,
    ) -> Result[list[BreakdownPeriod], BillingError]:
        """Period rows, or the first failing period's error."""
        filters = AggregationFilters(project_ids=[project_id], user_ids=[user_id])
        view = ViewMode.WEEKLY if granularity == Granularity.WEEKLY else ViewMode.MONTHLY
        rows: list[BreakdownPeriod] = []

        for period in split_range(date_range, granularity):
            aggregate = await self.engine.aggregate(
                view=view,
                start=period.start,
                end=period.end,
                filters=filters,
                group_by="project",
            )
            if aggregate.failed:
                return Err(BillingError(aggregate.error or "Aggregation failed"))

            row = BreakdownPeriod(
                label=period_label(period, granularity),
                start_date=period.start,
                end_date=period.end,
            )
            for project in aggregate.projects:
                if project.project_id != project_id:
                    continue
                for resource in project.resources:
                    if resource.user_id == user_id:
                        row.worked_hours = resource.worked_hours
                        row.billable_hours = resource.billable_hours
                        row.amount = resource.amount
            rows.append(row)

        return Ok(rows)
