"""
Intervention service: daily runs, listing and approval transitions.
"""

import logging
from datetime import date

from sqlalchemy import Engine

from src.data import repository as repo
from src.interventions import (
    ApprovalWorkflow,
    DailyRunCoordinator,
    EngineConfig,
    TransitionResult,
)
from src.interventions.dispatch import Dispatcher
from src.interventions.status import InterventionStatus, parse_status

logger = logging.getLogger(__name__)


def run_daily(
    engine: Engine,
    tenant_id: str,
    run_date: date | None,
    config: EngineConfig,
) -> dict:
    """Run (or resume) the daily pass for a tenant and return its summary."""
    summary = DailyRunCoordinator(engine, config).run(tenant_id, run_date)
    return summary.to_dict()


def get_interventions(
    engine: Engine,
    tenant_id: str,
    status: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Get interventions, optionally filtered by status.

    Raises:
        ValueError: If status is not a known intervention status.
    """
    if status:
        status = parse_status(status.upper()).value
    with engine.connect() as conn:
        records = repo.list_interventions(conn, tenant_id, status=status, limit=limit)
    return [r.to_dict() for r in records]


def get_intervention(engine: Engine, tenant_id: str, intervention_id: str) -> dict | None:
    """Get a single intervention by ID."""
    with engine.connect() as conn:
        record = repo.get_intervention(conn, tenant_id, intervention_id)
    return record.to_dict() if record else None


def approve(
    engine: Engine,
    dispatcher: Dispatcher,
    config: EngineConfig,
    tenant_id: str,
    intervention_id: str,
) -> TransitionResult:
    return ApprovalWorkflow(engine, dispatcher, config).approve_and_send(
        tenant_id, intervention_id
    )


def cancel(
    engine: Engine,
    dispatcher: Dispatcher,
    config: EngineConfig,
    tenant_id: str,
    intervention_id: str,
) -> TransitionResult:
    return ApprovalWorkflow(engine, dispatcher, config).cancel_intervention(
        tenant_id, intervention_id
    )


def retry(
    engine: Engine,
    dispatcher: Dispatcher,
    config: EngineConfig,
    tenant_id: str,
    intervention_id: str,
) -> TransitionResult:
    return ApprovalWorkflow(engine, dispatcher, config).retry_intervention(
        tenant_id, intervention_id
    )


def count_pending_approvals(engine: Engine, tenant_id: str) -> int:
    """Pending approval count for the approvals badge. Never raises."""
    try:
        with engine.connect() as conn:
            return repo.count_interventions(
                conn, tenant_id, InterventionStatus.PENDING_APPROVAL.value
            )
    except Exception as e:
        logger.error(f"count_pending_approvals failed for {tenant_id}: {e}")
        return 0
