"""Verification overlay: precedence between team-review figures, adjustments
and raw entry sums."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Iterable

from billing_engine.calculators.types import (
    ZERO,
    ProjectVerificationSummary,
    VerificationInfo,
    non_negative,
    quantize,
)

if TYPE_CHECKING:
    from billing_engine.models import TimesheetProjectApproval


def verification_from_approval(
    approval: TimesheetProjectApproval | None,
) -> VerificationInfo | None:
    """Build verification info from an approved team-review record.

    A record that is not management-approved supplies nothing. When the
    reviewer left the verified billable figure blank it is derived as
    ``max(0, worked + manager adjustment)``.
    """
    if approval is None or not approval.is_verified:
        return None
    worked = quantize(approval.worked_hours)
    manager_adjustment = quantize(approval.billable_adjustment)
    if approval.billable_hours is not None:
        verified_billable = quantize(approval.billable_hours)
    else:
        verified_billable = non_negative(quantize(worked + manager_adjustment))
    return VerificationInfo(
        verified_worked_hours=worked,
        manager_adjustment=manager_adjustment,
        verified_billable_hours=verified_billable,
        verified_at=approval.management_approved_at,
    )


def effective_baseline(raw_billable: Decimal, verification: VerificationInfo | None) -> Decimal:
    """Verified billable hours when present, else the raw entry sum."""
    if verification is not None:
        return verification.verified_billable_hours
    return quantize(raw_billable)


def effective_billable(
    raw_billable: Decimal,
    verification: VerificationInfo | None,
    adjustment_hours: Decimal | None,
) -> Decimal:
    """Billable hours for one cell.

    The adjustment delta is applied on top of the baseline, never in place
    of it, and the result is clamped at zero.
    """
    baseline = effective_baseline(raw_billable, verification)
    if adjustment_hours is None:
        return baseline
    return non_negative(quantize(baseline + adjustment_hours))


def merge_verifications(infos: Iterable[VerificationInfo | None]) -> VerificationInfo | None:
    """Sum several cells' verification figures; ``None`` if none are verified."""
    present = [info for info in infos if info is not None]
    if not present:
        return None
    stamps = [info.verified_at for info in present if info.verified_at is not None]
    return VerificationInfo(
        verified_worked_hours=quantize(sum((i.verified_worked_hours for i in present), ZERO)),
        manager_adjustment=quantize(sum((i.manager_adjustment for i in present), ZERO)),
        verified_billable_hours=quantize(
            sum((i.verified_billable_hours for i in present), ZERO)
        ),
        verified_at=max(stamps) if stamps else None,
    )


def summarize_project_verification(
    per_user: dict[object, VerificationInfo | None],
) -> ProjectVerificationSummary | None:
    """Roll per-user verification into a project-level summary."""
    verified = {user: info for user, info in per_user.items() if info is not None}
    if not verified:
        return None
    infos = list(verified.values())
    stamps = [info.verified_at for info in infos if info.verified_at is not None]
    return ProjectVerificationSummary(
        verified_worked_hours=quantize(sum((i.verified_worked_hours for i in infos), ZERO)),
        verified_billable_hours=quantize(
            sum((i.verified_billable_hours for i in infos), ZERO)
        ),
        manager_adjustment=quantize(sum((i.manager_adjustment for i in infos), ZERO)),
        verified_user_count=len(verified),
        last_verified_at=max(stamps) if stamps else None,
    )
