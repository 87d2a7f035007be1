"""Approval queue endpoints."""

import logging

from fastapi import APIRouter, Header, HTTPException, Response

from ..dependencies import get_db_engine, resolve_tenant
from ..schemas import CountResponse
from ..services import intervention_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get("/count", response_model=CountResponse)
def get_approval_count(
    response: Response,
    x_tenant_id: str | None = Header(default=None),
) -> CountResponse:
    """Number of interventions awaiting approval. Fails soft to zero."""
    try:
        tenant_id = resolve_tenant(x_tenant_id, response)
        engine = get_db_engine()
    except HTTPException as e:
        logger.warning(f"Approval count unavailable: {e.detail}")
        return CountResponse(count=0)
    except Exception as e:
        logger.error(f"Approval count unavailable: {e}")
        return CountResponse(count=0)
    return CountResponse(count=intervention_service.count_pending_approvals(engine, tenant_id))
