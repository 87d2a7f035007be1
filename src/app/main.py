"""
FastAPI application factory for Retain Gym.

Creates the app with lifespan, CORS, routers, and error handlers.

Usage:
    uvicorn src.app.main:app --reload --host 0.0.0.0 --port 8000
    DEMO_MODE=true uvicorn src.app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.data.database import apply_schema, get_engine, get_memory_engine
from src.interventions import InvalidTenantError

from .config import get_app_config
from .dependencies import get_db_engine, set_db_engine, set_dispatcher
from .fixtures.demo_data import seed_demo_data
from .routers import approvals, coach_accountability, interventions
from .schemas import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)


def _demo_engine():
    engine = get_memory_engine()
    apply_schema(engine)
    seed_demo_data(engine)
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Acquire database engine on startup, release on shutdown."""
    config = get_app_config()

    if not config.demo_mode:
        try:
            engine = get_engine()
            set_db_engine(engine)
            logger.info("Database engine initialized")
        except Exception as e:
            logger.warning(f"Database unavailable, falling back to demo data: {e}")
            set_db_engine(_demo_engine())
    else:
        logger.info("Running in demo mode, using seeded in-memory database")
        set_db_engine(_demo_engine())

    yield

    set_db_engine(None)
    set_dispatcher(None)
    logger.info("Database engine released")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_app_config()

    app = FastAPI(
        title="Retain Gym API",
        description="Member retention: risk scoring, interventions and coach follow-up",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Tenant-Fallback"],
    )

    # Routers
    prefix = config.api_prefix
    app.include_router(interventions.router, prefix=prefix)
    app.include_router(approvals.router, prefix=prefix)
    app.include_router(coach_accountability.router, prefix=prefix)

    # Health check
    @app.get(f"{prefix}/health", response_model=HealthResponse, tags=["System"])
    def health_check() -> HealthResponse:
        db_ok = False
        try:
            with get_db_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
            db_ok = True
        except Exception as e:
            logger.warning(f"Health check database probe failed: {e}")

        return HealthResponse(
            status="ok",
            demo_mode=config.demo_mode,
            db_connected=db_ok,
        )

    # Exception handlers
    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error="Not Found",
                detail=getattr(exc, "detail", None) or str(exc),
            ).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="Validation Error",
                detail=str(exc),
            ).model_dump(),
        )

    @app.exception_handler(InvalidTenantError)
    async def invalid_tenant_handler(request: Request, exc: InvalidTenantError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="Invalid Tenant", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Internal server error: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=str(exc) if config.debug else None,
            ).model_dump(),
        )

    return app


app = create_app()
