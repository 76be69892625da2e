"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine import __version__
from billing_engine.api.errors import status_for
from billing_engine.api.routes import (
    billing_router,
    health_router,
    snapshots_router,
    timesheets_router,
)
from billing_engine.config import Settings, get_settings
from billing_engine.database import create_schema, init_db
from billing_engine.errors import BillingError
from billing_engine.services import BillingServices

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        # Startup
        engine, session_factory = init_db(settings.database_url, echo=settings.debug)
        if settings.auto_create_schema:
            await create_schema(engine)
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.services = BillingServices.from_settings(settings)
        logger.info("Billing engine started")
        yield
        # Shutdown
        await engine.dispose()

    app = FastAPI(
        title="Billing Engine API",
        description="Billing adjustments, aggregation and weekly snapshots",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(BillingError)
    async def billing_exception_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        """Map typed billing errors to their HTTP status."""
        return JSONResponse(
            status_code=status_for(exc),
            content={
                "detail": exc.message,
                "code": exc.code,
                "context": jsonable_encoder(exc.context),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(billing_router, prefix="/api/v1")
    app.include_router(snapshots_router, prefix="/api/v1")
    app.include_router(timesheets_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
