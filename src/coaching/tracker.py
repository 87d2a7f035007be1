"""
Coach assignment tracking.

One active coach per member, least-loaded auto-assignment, overdue
follow-up detection and the "saved" retention flag. Logged coach touches
refresh the assignment's last touch; the touch log itself also feeds the
scorer's overdue-touch signal, so members without a coach still count.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.engine import Connection, Engine

from src.data import repository as repo
from src.interventions.errors import PreconditionError
from src.interventions.tenancy import validate_tenant_id
from src.scoring import ScoringConfig

logger = logging.getLogger("retain.coaching")

DUPLICATE_TOUCH_WINDOW = timedelta(hours=2)


class MemberNotFoundError(PreconditionError):
    def __init__(self, member_id: str):
        super().__init__(f"Member {member_id} not found")
        self.member_id = member_id


class CoachNotFoundError(PreconditionError):
    def __init__(self, coach_id: str):
        super().__init__(f"Coach {coach_id} not found")
        self.coach_id = coach_id


class DuplicateTouchError(PreconditionError):
    """Same member, channel and outcome already logged within the window."""


@dataclass
class OverdueAssignment:
    member_id: str
    coach_id: str
    days_since_touch: int
    last_touch_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "coach_id": self.coach_id,
            "days_since_touch": self.days_since_touch,
            "last_touch_at": repo.to_iso(self.last_touch_at) if self.last_touch_at else None,
        }


class CoachAssignmentTracker:
    """
    Member to coach ownership for a tenant.

    Example:
        >>> tracker = CoachAssignmentTracker(engine)
        >>> tracker.auto_assign("gym-1")
        3
        >>> [o.member_id for o in tracker.overdue_assignments("gym-1")]
    """

    def __init__(
        self,
        engine: Engine,
        config: ScoringConfig | None = None,
        clock: Callable[[], datetime] = repo.utc_now,
    ):
        self.engine = engine
        self.config = config or ScoringConfig()
        self.clock = clock

    def assign_coach(
        self,
        tenant_id: str,
        member_id: str,
        coach_id: str,
        assigned_by: str | None = None,
    ) -> repo.AssignmentRecord:
        """Assign (or reassign) a member to a coach within the tenant."""
        validate_tenant_id(tenant_id)
        now = self.clock()
        with self.engine.begin() as conn:
            self._require_member(conn, tenant_id, member_id)
            if not repo.coach_exists(conn, tenant_id, coach_id):
                raise CoachNotFoundError(coach_id)
            repo.upsert_assignment(conn, tenant_id, member_id, coach_id, assigned_by, now)
            assignment = repo.get_assignment(conn, tenant_id, member_id)

        logger.info(f"[{tenant_id}] Member {member_id} assigned to coach {coach_id}")
        return assignment

    def auto_assign(self, tenant_id: str) -> int:
        """Give every unassigned member the least-loaded active coach."""
        validate_tenant_id(tenant_id)
        now = self.clock()
        assigned = 0
        with self.engine.begin() as conn:
            loads = repo.coach_loads(conn, tenant_id)
            if not loads:
                logger.warning(f"[{tenant_id}] No active coaches; nothing assigned")
                return 0
            for member_id in repo.list_unassigned_member_ids(conn, tenant_id):
                coach_id = min(loads, key=lambda c: (loads[c], c))
                if repo.insert_assignment_if_absent(
                    conn, tenant_id, member_id, coach_id, "auto", now
                ):
                    loads[coach_id] += 1
                    assigned += 1

        logger.info(f"[{tenant_id}] Auto-assigned {assigned} members")
        return assigned

    def overdue_assignments(
        self, tenant_id: str, now: datetime | None = None
    ) -> list[OverdueAssignment]:
        """Assignments with no touch (or, if never touched, no activity since
        assignment) for longer than the overdue threshold."""
        validate_tenant_id(tenant_id)
        now = now or self.clock()
        threshold = timedelta(days=self.config.overdue_touch_days)

        with self.engine.connect() as conn:
            assignments = repo.list_assignments(conn, tenant_id)

        overdue = []
        for a in assignments:
            reference = a.last_touch_at or a.assigned_at
            elapsed = now - reference
            if elapsed > threshold:
                overdue.append(
                    OverdueAssignment(a.member_id, a.coach_id, elapsed.days, a.last_touch_at)
                )
        overdue.sort(key=lambda o: (-o.days_since_touch, o.member_id))
        return overdue

    def mark_saved(self, tenant_id: str, member_id: str, saved: bool) -> repo.AssignmentRecord:
        validate_tenant_id(tenant_id)
        with self.engine.begin() as conn:
            self._require_member(conn, tenant_id, member_id)
            if not repo.set_assignment_saved(conn, tenant_id, member_id, saved):
                raise PreconditionError(f"Member {member_id} has no coach assignment")
            return repo.get_assignment(conn, tenant_id, member_id)

    def record_touch(
        self,
        tenant_id: str,
        member_id: str,
        coach_id: str,
        channel: str,
        outcome: str,
        notes: str | None = None,
    ) -> str:
        """Log a coach interaction and refresh the member's last touch.

        Raises:
            DuplicateTouchError: Same member, channel and outcome within two hours.
        """
        validate_tenant_id(tenant_id)
        now = self.clock()
        with self.engine.begin() as conn:
            self._require_member(conn, tenant_id, member_id)
            if not repo.coach_exists(conn, tenant_id, coach_id):
                raise CoachNotFoundError(coach_id)
            if repo.recent_touch_exists(
                conn, tenant_id, member_id, channel, outcome, now - DUPLICATE_TOUCH_WINDOW
            ):
                raise DuplicateTouchError(
                    f"A {channel} touch with outcome {outcome} was already logged "
                    f"for member {member_id} in the last 2 hours"
                )
            touch_id = repo.insert_coach_touch(
                conn, tenant_id, member_id, coach_id, channel, outcome, notes, now
            )
            repo.touch_assignment(conn, tenant_id, member_id, now)

        logger.info(f"[{tenant_id}] Coach {coach_id} touched member {member_id} ({channel})")
        return touch_id

    def _require_member(self, conn: Connection, tenant_id: str, member_id: str) -> None:
        if repo.get_member(conn, tenant_id, member_id) is None:
            raise MemberNotFoundError(member_id)
