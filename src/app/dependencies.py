"""
FastAPI dependency injection for Retain Gym.

Provides the database engine, outbound dispatcher, engine config and the
session tenant as injectable dependencies.
"""

import logging
from functools import lru_cache

from fastapi import Header, HTTPException, Query, Response
from sqlalchemy import Engine

from src.interventions import (
    ChannelDispatcher,
    EngineConfig,
    InvalidTenantError,
    get_engine_config,
    validate_tenant_id,
)
from src.interventions.dispatch import Dispatcher

from .config import AppConfig, get_app_config

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_dispatcher: Dispatcher | None = None

TENANT_FALLBACK_HEADER = "X-Tenant-Fallback"


@lru_cache
def get_config() -> AppConfig:
    """Return cached application config."""
    return get_app_config()


@lru_cache
def get_intervention_config() -> EngineConfig:
    """Return cached intervention engine config."""
    return get_engine_config()


def get_demo_mode() -> bool:
    """Return whether app is running in demo mode."""
    return get_config().demo_mode


def get_db_engine() -> Engine:
    """Return the SQLAlchemy database engine.

    Uses the engine created at app startup via lifespan.
    Falls back to creating a new engine if needed.
    """
    global _engine
    if _engine is not None:
        return _engine

    try:
        from src.data.database import get_engine

        _engine = get_engine()
        return _engine
    except Exception as e:
        logger.error(f"Failed to get database engine: {e}")
        raise


def set_db_engine(engine: Engine | None) -> None:
    """Set the database engine (used by lifespan and tests)."""
    global _engine
    _engine = engine


def get_dispatcher() -> Dispatcher:
    """Return the outbound dispatcher; demo mode only logs messages."""
    global _dispatcher
    if _dispatcher is None:
        if get_demo_mode():
            _dispatcher = ChannelDispatcher.for_demo()
        else:
            _dispatcher = ChannelDispatcher.from_config(get_intervention_config())
    return _dispatcher


def set_dispatcher(dispatcher: Dispatcher | None) -> None:
    """Replace the dispatcher (used by tests)."""
    global _dispatcher
    _dispatcher = dispatcher


# =============================================================================
# Tenant resolution
# =============================================================================


def resolve_tenant(candidate: str | None, response: Response) -> str:
    """Validate an explicit tenant id, or substitute the demo tenant.

    The fallback only applies when enabled, and every use is logged and
    flagged on the response so it can never happen silently.
    """
    if candidate:
        try:
            return validate_tenant_id(candidate)
        except InvalidTenantError as e:
            raise HTTPException(status_code=400, detail=str(e)) from None

    config = get_config()
    if not config.allow_tenant_fallback:
        raise HTTPException(status_code=400, detail="Tenant id is required")

    logger.warning(
        f"No tenant on request; falling back to demo tenant {config.demo_tenant_id}"
    )
    response.headers[TENANT_FALLBACK_HEADER] = "true"
    return config.demo_tenant_id


def get_tenant_id(
    response: Response,
    x_tenant_id: str | None = Header(default=None),
) -> str:
    """Session tenant from the X-Tenant-Id header."""
    return resolve_tenant(x_tenant_id, response)


def get_run_tenant_id(
    response: Response,
    tenantId: str | None = Query(default=None),
    x_tenant_id: str | None = Header(default=None),
) -> str:
    """Tenant for a daily run: tenantId query parameter, then the session header."""
    return resolve_tenant(tenantId or x_tenant_id, response)
