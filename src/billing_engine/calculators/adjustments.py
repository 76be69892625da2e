"""Pure rules for billing adjustments.

Normalization runs explicitly before every ledger write; nothing here
touches storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from billing_engine.calculators.types import ZERO, non_negative, quantize
from billing_engine.errors import ValidationError
from billing_engine.models.billing import AdjustmentScope
from billing_engine.result import Err, Ok, Result

_EPSILON = Decimal("0.0001")


@dataclass(frozen=True)
class AdjustmentTarget:
    """Normalized scope of an adjustment write."""

    scope: AdjustmentScope
    project_id: UUID | None
    task_id: UUID | None


def derive_total_billable(total_worked_hours: Decimal, adjustment_hours: Decimal) -> Decimal:
    """``max(0, worked + delta)``."""
    return non_negative(quantize(total_worked_hours + adjustment_hours))


def normalize_scope(
    scope: AdjustmentScope | str,
    project_id: UUID | None,
    task_id: UUID | None = None,
) -> Result[AdjustmentTarget, ValidationError]:
    """Validate the scope target.

    Project scope requires a project. Timesheet scope silently clears any
    project or task target.
    """
    try:
        scope = AdjustmentScope(scope)
    except ValueError:
        return Err(ValidationError(f"Invalid adjustment scope '{scope}'", {"scope": str(scope)}))

    if scope == AdjustmentScope.TIMESHEET:
        return Ok(AdjustmentTarget(scope=scope, project_id=None, task_id=None))

    if project_id is None:
        return Err(
            ValidationError(
                "Project-scoped adjustments require a project",
                {"scope": scope.value},
            )
        )
    return Ok(AdjustmentTarget(scope=scope, project_id=project_id, task_id=task_id))


@dataclass
class ResourceAllocation:
    """One resource's share of a project-level billable target."""

    user_id: UUID
    current_hours: Decimal
    total_hours: Decimal
    target_hours: Decimal


def plan_project_targets(
    resources: list[tuple[UUID, Decimal, Decimal]],
    target: Decimal,
) -> list[ResourceAllocation]:
    """Split a project billable target across its resources.

    Args:
        resources: ``(user_id, current_billable, worked_hours)`` in row order.
        target: Desired project billable total.

    Raising the total spreads the increase evenly, capped by each
    resource's headroom (worked minus billable); anything left over goes to
    the first resource. Lowering the total takes hours from the largest
    resources first.
    """
    if not resources:
        return []

    target = quantize(target)
    allocations = [
        ResourceAllocation(
            user_id=user_id,
            current_hours=quantize(current),
            total_hours=quantize(worked),
            target_hours=quantize(current),
        )
        for user_id, current, worked in resources
    ]
    current_total = sum((a.current_hours for a in allocations), ZERO)

    if target <= ZERO:
        for allocation in allocations:
            allocation.target_hours = quantize(ZERO)
        return allocations

    if len(allocations) == 1:
        allocations[0].target_hours = target
        return allocations

    if target > current_total:
        remaining = target - current_total
        while remaining > _EPSILON:
            active = [
                a for a in allocations if a.total_hours - a.target_hours > _EPSILON
            ]
            if not active:
                break
            share = quantize(remaining / len(active))
            if share <= ZERO:
                break
            consumed = ZERO
            for allocation in active:
                step = min(share, allocation.total_hours - allocation.target_hours, remaining - consumed)
                if step <= ZERO:
                    continue
                allocation.target_hours = quantize(allocation.target_hours + step)
                consumed += step
            if consumed <= ZERO:
                break
            remaining = quantize(remaining - consumed)
        if remaining > _EPSILON:
            allocations[0].target_hours = quantize(allocations[0].target_hours + remaining)
        return allocations

    if target < current_total:
        remaining = current_total - target
        for allocation in sorted(allocations, key=lambda a: a.target_hours, reverse=True):
            if remaining <= _EPSILON:
                break
            if allocation.target_hours <= ZERO:
                continue
            step = min(allocation.target_hours, remaining)
            allocation.target_hours = quantize(allocation.target_hours - step)
            remaining = quantize(remaining - step)

    return allocations
