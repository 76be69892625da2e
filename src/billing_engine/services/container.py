"""Explicit wiring of repositories and services.

``BillingServices`` is built once at process startup from settings; each
unit of work asks it for a ``ServiceBundle`` bound to one session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import Settings
from billing_engine.services.adjustment_ledger import AdjustmentLedger
from billing_engine.services.aggregation import AggregationEngine
from billing_engine.services.audit import AuditRecorder
from billing_engine.services.breakdown import BreakdownResolver
from billing_engine.services.repositories import (
    AdjustmentRepository,
    DirectoryRepository,
    SnapshotRepository,
    TimesheetRepository,
)
from billing_engine.services.snapshot_service import SnapshotService
from billing_engine.services.time_entry_service import TimeEntryService


@dataclass
class ServiceBundle:
    """Services sharing one session."""

    session: AsyncSession
    engine: AggregationEngine
    breakdown: BreakdownResolver
    ledger: AdjustmentLedger
    snapshots: SnapshotService
    entries: TimeEntryService


class BillingServices:
    """Startup-time service configuration."""

    def __init__(
        self,
        adjustment_max_retries: int = 3,
        aggregation_timeout_seconds: float = 30.0,
        clock: Callable[[], date] = date.today,
    ):
        self.adjustment_max_retries = adjustment_max_retries
        self.aggregation_timeout_seconds = aggregation_timeout_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> BillingServices:
        return cls(
            adjustment_max_retries=settings.adjustment_max_retries,
            aggregation_timeout_seconds=settings.aggregation_timeout_seconds,
        )

    def for_session(self, session: AsyncSession) -> ServiceBundle:
        directory = DirectoryRepository(session)
        timesheets = TimesheetRepository(session)
        adjustments = AdjustmentRepository(session)
        audit = AuditRecorder(session)

        engine = AggregationEngine(
            session,
            directory,
            timesheets,
            adjustments,
            timeout_seconds=self.aggregation_timeout_seconds,
            clock=self.clock,
        )
        ledger = AdjustmentLedger(
            session,
            adjustments,
            timesheets,
            directory,
            engine,
            audit,
            max_retries=self.adjustment_max_retries,
            clock=self.clock,
        )
        return ServiceBundle(
            session=session,
            engine=engine,
            breakdown=BreakdownResolver(engine),
            ledger=ledger,
            snapshots=SnapshotService(
                session, SnapshotRepository(session), timesheets, directory, engine, audit
            ),
            entries=TimeEntryService(session, timesheets, directory, ledger, audit),
        )
