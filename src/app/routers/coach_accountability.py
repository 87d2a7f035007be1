"""Coach accountability endpoints: assignments, saved flag, overdue list, touches."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from src.coaching import CoachNotFoundError, DuplicateTouchError, MemberNotFoundError
from src.interventions import EngineConfig, PreconditionError

from ..dependencies import get_db_engine, get_intervention_config, get_tenant_id
from ..schemas import (
    AssignCoachRequest,
    AssignmentResponse,
    AutoAssignResponse,
    CoachTouchRequest,
    CoachTouchResponse,
    MarkSavedRequest,
    OverdueAssignmentResponse,
)
from ..services import coach_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coach-accountability", tags=["Coach Accountability"])


@router.post("/assign", response_model=AssignmentResponse)
def assign_coach(
    request: AssignCoachRequest,
    tenant_id: str = Depends(get_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> AssignmentResponse:
    """Assign a member to a coach."""
    try:
        data = coach_service.assign(
            get_db_engine(), config, tenant_id, request.member_id, request.coach_id
        )
    except (MemberNotFoundError, CoachNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    return AssignmentResponse(**data)


@router.post("/auto-assign", response_model=AutoAssignResponse)
def auto_assign(
    tenant_id: str = Depends(get_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> AutoAssignResponse:
    """Assign every unassigned member to the least-loaded coach."""
    try:
        assigned = coach_service.auto_assign(get_db_engine(), config, tenant_id)
    except Exception:
        logger.exception(f"Auto-assign failed for tenant {tenant_id}")
        raise HTTPException(status_code=500, detail="Auto-assign failed") from None
    return AutoAssignResponse(assigned=assigned)


@router.post("/mark-saved", response_model=AssignmentResponse)
def mark_saved(
    request: MarkSavedRequest,
    tenant_id: str = Depends(get_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> AssignmentResponse:
    """Flag a member as saved (or clear the flag)."""
    try:
        data = coach_service.mark_saved(
            get_db_engine(), config, tenant_id, request.member_id, request.saved
        )
    except PreconditionError as e:
        # Unknown member or no assignment
        raise HTTPException(status_code=404, detail=str(e)) from None
    return AssignmentResponse(**data)


@router.get("/overdue", response_model=list[OverdueAssignmentResponse])
def get_overdue(
    tenant_id: str = Depends(get_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> list[OverdueAssignmentResponse]:
    """Assignments whose coach follow-up is overdue."""
    try:
        data = coach_service.get_overdue(get_db_engine(), config, tenant_id)
    except Exception:
        logger.exception(f"Overdue lookup failed for tenant {tenant_id}")
        raise HTTPException(status_code=500, detail="Overdue lookup failed") from None
    return [OverdueAssignmentResponse(**d) for d in data]


@router.post("/touches", response_model=CoachTouchResponse)
def record_touch(
    request: CoachTouchRequest,
    tenant_id: str = Depends(get_tenant_id),
    config: EngineConfig = Depends(get_intervention_config),
) -> CoachTouchResponse:
    """Log a coach interaction with a member."""
    try:
        data = coach_service.record_touch(
            get_db_engine(),
            config,
            tenant_id,
            request.member_id,
            request.coach_id,
            request.channel,
            request.outcome,
            request.notes,
        )
    except DuplicateTouchError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    except (MemberNotFoundError, CoachNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    return CoachTouchResponse(**data)
