"""Intervention API endpoints: daily run, listing and approval transitions."""

import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException

from src.interventions import EngineConfig, PreconditionError
from src.interventions.dispatch import Dispatcher

from ..dependencies import (
    get_db_engine,
    get_dispatcher,
    get_intervention_config,
    get_run_tenant_id,
    get_tenant_id,
)
from ..schemas import InterventionResponse, RunSummaryResponse, SuccessResponse
from ..services import intervention_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/interventions", tags=["Interventions"])


def _parse_run_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(
            status_code=400, detail="date must be formatted YYYY-MM-DD"
        ) from None


@router.post("/run-daily", response_model=RunSummaryResponse)
def run_daily(
    date: str | None = None,
    tenant_id: str = Depends(get_run_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> RunSummaryResponse:
    """Run the daily scoring and generation pass for a tenant."""
    run_date = _parse_run_date(date)
    try:
        data = intervention_service.run_daily(get_db_engine(), tenant_id, run_date, config)
    except Exception:
        logger.exception(f"Daily run failed for tenant {tenant_id}")
        raise HTTPException(status_code=500, detail="Daily run failed") from None
    return RunSummaryResponse(**data)


@router.get("", response_model=list[InterventionResponse])
def get_interventions(
    status: str | None = None,
    tenant_id: str = Depends(get_tenant_id),
) -> list[InterventionResponse]:
    """Get interventions, optionally filtered by status."""
    try:
        data = intervention_service.get_interventions(get_db_engine(), tenant_id, status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return [InterventionResponse(**d) for d in data]


@router.get("/{intervention_id}", response_model=InterventionResponse)
def get_intervention(
    intervention_id: str,
    tenant_id: str = Depends(get_tenant_id),
) -> InterventionResponse:
    """Get a single intervention by ID."""
    data = intervention_service.get_intervention(get_db_engine(), tenant_id, intervention_id)
    if data is None:
        raise HTTPException(status_code=404, detail="Intervention not found")
    return InterventionResponse(**data)


@router.post("/{intervention_id}/approve", response_model=SuccessResponse)
def approve_intervention(
    intervention_id: str,
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    config: EngineConfig = Depends(get_intervention_config),
) -> SuccessResponse:
    """Approve a pending intervention and send it."""
    try:
        result = intervention_service.approve(
            get_db_engine(), dispatcher, config, tenant_id, intervention_id
        )
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    if not result.success:
        raise HTTPException(
            status_code=400,
            detail=f"Send failed, intervention is {result.status.value}: {result.error}",
        )
    return SuccessResponse(success=True, status=result.status.value)


@router.post("/{intervention_id}/cancel", response_model=SuccessResponse)
def cancel_intervention(
    intervention_id: str,
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    config: EngineConfig = Depends(get_intervention_config),
) -> SuccessResponse:
    """Cancel a pending intervention. Cancelling twice succeeds."""
    try:
        result = intervention_service.cancel(
            get_db_engine(), dispatcher, config, tenant_id, intervention_id
        )
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except Exception:
        logger.exception(f"Cancel failed for intervention {intervention_id}")
        raise HTTPException(status_code=500, detail="Cancel failed") from None
    return SuccessResponse(success=True, status=result.status.value)


@router.post("/{intervention_id}/retry", response_model=SuccessResponse)
def retry_intervention(
    intervention_id: str,
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    config: EngineConfig = Depends(get_intervention_config),
) -> SuccessResponse:
    """Retry a failed intervention."""
    try:
        result = intervention_service.retry(
            get_db_engine(), dispatcher, config, tenant_id, intervention_id
        )
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    if not result.success:
        raise HTTPException(
            status_code=400,
            detail=f"Send failed, intervention is {result.status.value}: {result.error}",
        )
    return SuccessResponse(success=True, status=result.status.value)
