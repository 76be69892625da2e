"""Storage-free billing calculations."""

from billing_engine.calculators.entry_classifier import NormalizedEntry, classify
from billing_engine.calculators.lock_policy import ProjectLockPolicy
from billing_engine.calculators.periods import DateRange, Granularity, ViewMode
from billing_engine.calculators.rate_resolver import RateResolver
from billing_engine.calculators.verification import effective_billable

__all__ = [
    "DateRange",
    "Granularity",
    "NormalizedEntry",
    "ProjectLockPolicy",
    "RateResolver",
    "ViewMode",
    "classify",
    "effective_billable",
]
