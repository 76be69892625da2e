"""Billing engine services."""

from billing_engine.services.adjustment_ledger import AdjustmentLedger, AdjustmentRequest
from billing_engine.services.aggregation import AggregationEngine
from billing_engine.services.breakdown import BreakdownResolver
from billing_engine.services.container import BillingServices, ServiceBundle
from billing_engine.services.snapshot_service import SnapshotService
from billing_engine.services.time_entry_service import TimeEntryService

__all__ = [
    "AdjustmentLedger",
    "AdjustmentRequest",
    "AggregationEngine",
    "BillingServices",
    "BreakdownResolver",
    "ServiceBundle",
    "SnapshotService",
    "TimeEntryService",
]
