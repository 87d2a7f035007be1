"""
Coach accountability service: assignments, saved flag, overdue follow-ups
and logged touches.
"""

import logging

from sqlalchemy import Engine

from src.coaching import CoachAssignmentTracker
from src.data import repository as repo
from src.interventions import EngineConfig

logger = logging.getLogger(__name__)


def _tracker(engine: Engine, config: EngineConfig) -> CoachAssignmentTracker:
    return CoachAssignmentTracker(engine, config.scoring)


def _assignment_dict(a: repo.AssignmentRecord) -> dict:
    return {
        "member_id": a.member_id,
        "coach_id": a.coach_id,
        "saved": a.saved,
        "last_touch_at": repo.to_iso(a.last_touch_at) if a.last_touch_at else None,
        "assigned_at": repo.to_iso(a.assigned_at),
        "assigned_by": a.assigned_by,
    }


def assign(
    engine: Engine, config: EngineConfig, tenant_id: str, member_id: str, coach_id: str
) -> dict:
    assignment = _tracker(engine, config).assign_coach(
        tenant_id, member_id, coach_id, assigned_by="api"
    )
    return _assignment_dict(assignment)


def auto_assign(engine: Engine, config: EngineConfig, tenant_id: str) -> int:
    return _tracker(engine, config).auto_assign(tenant_id)


def mark_saved(
    engine: Engine, config: EngineConfig, tenant_id: str, member_id: str, saved: bool
) -> dict:
    assignment = _tracker(engine, config).mark_saved(tenant_id, member_id, saved)
    return _assignment_dict(assignment)


def get_overdue(engine: Engine, config: EngineConfig, tenant_id: str) -> list[dict]:
    return [o.to_dict() for o in _tracker(engine, config).overdue_assignments(tenant_id)]


def record_touch(
    engine: Engine,
    config: EngineConfig,
    tenant_id: str,
    member_id: str,
    coach_id: str,
    channel: str,
    outcome: str,
    notes: str | None,
) -> dict:
    touch_id = _tracker(engine, config).record_touch(
        tenant_id, member_id, coach_id, channel, outcome, notes
    )
    return {"id": touch_id, "member_id": member_id}
