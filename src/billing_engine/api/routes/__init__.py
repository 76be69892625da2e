"""API route modules."""

from billing_engine.api.routes.billing import router as billing_router
from billing_engine.api.routes.health import router as health_router
from billing_engine.api.routes.snapshots import router as snapshots_router
from billing_engine.api.routes.timesheets import router as timesheets_router

__all__ = ["billing_router", "health_router", "snapshots_router", "timesheets_router"]
