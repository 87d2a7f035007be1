"""
Tenant-scoped data access for the intervention engine.

Every function takes an open SQLAlchemy connection and, for tenant-owned
tables, a tenant id that is always part of the WHERE clause. Functions that
guard an invariant use conditional writes and report success through the
affected row count; callers own the transaction boundaries.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection

logger = logging.getLogger("retain.data.repository")


# =============================================================================
# Helpers
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _to_date(value: str | date | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Records
# =============================================================================


@dataclass
class MemberRecord:
    id: str
    tenant_id: str
    first_name: str
    last_name: str = ""
    email: str | None = None
    phone: str | None = None
    joined_date: date | None = None
    expected_visits_per_week: float | None = None
    consent_email: bool = True
    consent_sms: bool = False
    do_not_contact: bool = False
    status: str = "active"


@dataclass
class InterventionRecord:
    id: str
    tenant_id: str
    member_id: str
    intervention_type: str
    channel: str
    status: str
    rendered_body: str
    created_at: datetime
    updated_at: datetime
    reason: str | None = None
    rendered_subject: str | None = None
    run_date: date | None = None
    provider_message_id: str | None = None
    failure_reason: str | None = None
    attempt_count: int = 0
    approved_at: datetime | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "member_id": self.member_id,
            "intervention_type": self.intervention_type,
            "channel": self.channel,
            "status": self.status,
            "reason": self.reason,
            "rendered_subject": self.rendered_subject,
            "rendered_body": self.rendered_body,
            "run_date": self.run_date.isoformat() if self.run_date else None,
            "provider_message_id": self.provider_message_id,
            "failure_reason": self.failure_reason,
            "attempt_count": self.attempt_count,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "approved_at": to_iso(self.approved_at) if self.approved_at else None,
            "sent_at": to_iso(self.sent_at) if self.sent_at else None,
            "failed_at": to_iso(self.failed_at) if self.failed_at else None,
        }


@dataclass
class DailyRunRecord:
    tenant_id: str
    run_date: date
    status: str
    members_processed: int
    interventions_created: int
    error_count: int
    error_details: list[str]
    cursor_member_id: str | None
    lease_token: str | None
    lease_expires_at: datetime | None
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass
class AssignmentRecord:
    member_id: str
    tenant_id: str
    coach_id: str
    saved: bool
    last_touch_at: datetime | None
    assigned_at: datetime
    assigned_by: str | None


def _member_from_row(row: Any) -> MemberRecord:
    return MemberRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        first_name=row["first_name"],
        last_name=row["last_name"] or "",
        email=row["email"],
        phone=row["phone"],
        joined_date=_to_date(row["joined_date"]),
        expected_visits_per_week=row["expected_visits_per_week"],
        consent_email=bool(row["consent_email"]),
        consent_sms=bool(row["consent_sms"]),
        do_not_contact=bool(row["do_not_contact"]),
        status=row["status"],
    )


def _intervention_from_row(row: Any) -> InterventionRecord:
    return InterventionRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        member_id=row["member_id"],
        intervention_type=row["intervention_type"],
        channel=row["channel"],
        status=row["status"],
        rendered_body=row["rendered_body"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        reason=row["reason"],
        rendered_subject=row["rendered_subject"],
        run_date=_to_date(row["run_date"]),
        provider_message_id=row["provider_message_id"],
        failure_reason=row["failure_reason"],
        attempt_count=row["attempt_count"] or 0,
        approved_at=from_iso(row["approved_at"]),
        sent_at=from_iso(row["sent_at"]),
        failed_at=from_iso(row["failed_at"]),
    )


def _daily_run_from_row(row: Any) -> DailyRunRecord:
    return DailyRunRecord(
        tenant_id=row["tenant_id"],
        run_date=_to_date(row["run_date"]),
        status=row["status"],
        members_processed=row["members_processed"],
        interventions_created=row["interventions_created"],
        error_count=row["error_count"],
        error_details=json.loads(row["error_details"] or "[]"),
        cursor_member_id=row["cursor_member_id"],
        lease_token=row["lease_token"],
        lease_expires_at=from_iso(row["lease_expires_at"]),
        started_at=from_iso(row["started_at"]),
        updated_at=from_iso(row["updated_at"]),
        completed_at=from_iso(row["completed_at"]),
    )


def _assignment_from_row(row: Any) -> AssignmentRecord:
    return AssignmentRecord(
        member_id=row["member_id"],
        tenant_id=row["tenant_id"],
        coach_id=row["coach_id"],
        saved=bool(row["saved"]),
        last_touch_at=from_iso(row["last_touch_at"]),
        assigned_at=from_iso(row["assigned_at"]),
        assigned_by=row["assigned_by"],
    )


# =============================================================================
# Tenants
# =============================================================================


def insert_tenant(
    conn: Connection, tenant_id: str, name: str, timezone_name: str = "Europe/London"
) -> None:
    conn.execute(
        text("""
            INSERT INTO tenants (id, name, timezone, created_at)
            VALUES (:id, :name, :timezone, :created_at)
        """),
        {"id": tenant_id, "name": name, "timezone": timezone_name,
         "created_at": to_iso(utc_now())},
    )


def list_tenant_ids(conn: Connection) -> list[str]:
    rows = conn.execute(text("SELECT id FROM tenants ORDER BY id")).all()
    return [r[0] for r in rows]


# =============================================================================
# Members and engagement
# =============================================================================


def insert_member(conn: Connection, member: MemberRecord) -> None:
    conn.execute(
        text("""
            INSERT INTO members
            (id, tenant_id, first_name, last_name, email, phone, joined_date,
             expected_visits_per_week, consent_email, consent_sms,
             do_not_contact, status, created_at)
            VALUES (:id, :tenant_id, :first_name, :last_name, :email, :phone,
                    :joined_date, :expected_visits_per_week, :consent_email,
                    :consent_sms, :do_not_contact, :status, :created_at)
        """),
        {
            "id": member.id,
            "tenant_id": member.tenant_id,
            "first_name": member.first_name,
            "last_name": member.last_name,
            "email": member.email,
            "phone": member.phone,
            "joined_date": member.joined_date.isoformat() if member.joined_date else None,
            "expected_visits_per_week": member.expected_visits_per_week,
            "consent_email": member.consent_email,
            "consent_sms": member.consent_sms,
            "do_not_contact": member.do_not_contact,
            "status": member.status,
            "created_at": to_iso(utc_now()),
        },
    )


def get_member(conn: Connection, tenant_id: str, member_id: str) -> MemberRecord | None:
    row = conn.execute(
        text("SELECT * FROM members WHERE tenant_id = :tenant_id AND id = :id"),
        {"tenant_id": tenant_id, "id": member_id},
    ).mappings().first()
    return _member_from_row(row) if row else None


def fetch_member_batch(
    conn: Connection, tenant_id: str, after_member_id: str | None, limit: int
) -> list[MemberRecord]:
    """Next page of scoreable members in id order, strictly after the cursor."""
    rows = conn.execute(
        text("""
            SELECT * FROM members
            WHERE tenant_id = :tenant_id
              AND status <> 'cancelled'
              AND id > :after
            ORDER BY id
            LIMIT :limit
        """),
        {"tenant_id": tenant_id, "after": after_member_id or "", "limit": limit},
    ).mappings().all()
    return [_member_from_row(r) for r in rows]


def insert_engagement(
    conn: Connection, tenant_id: str, member_id: str, occurred_on: date, kind: str = "visit"
) -> None:
    conn.execute(
        text("""
            INSERT INTO engagement_events (id, tenant_id, member_id, occurred_on, kind)
            VALUES (:id, :tenant_id, :member_id, :occurred_on, :kind)
        """),
        {"id": new_id(), "tenant_id": tenant_id, "member_id": member_id,
         "occurred_on": occurred_on.isoformat(), "kind": kind},
    )


def visit_dates_by_member(
    conn: Connection, tenant_id: str, member_ids: list[str]
) -> dict[str, list[date]]:
    if not member_ids:
        return {}
    query = text("""
        SELECT member_id, occurred_on FROM engagement_events
        WHERE tenant_id = :tenant_id AND member_id IN :ids
    """).bindparams(bindparam("ids", expanding=True))
    result: dict[str, list[date]] = {m: [] for m in member_ids}
    for member_id, occurred_on in conn.execute(
        query, {"tenant_id": tenant_id, "ids": member_ids}
    ):
        result[member_id].append(_to_date(occurred_on))
    return result


# =============================================================================
# Coaches and assignments
# =============================================================================


def insert_coach(
    conn: Connection,
    tenant_id: str,
    coach_id: str,
    name: str,
    email: str | None = None,
    active: bool = True,
) -> None:
    conn.execute(
        text("""
            INSERT INTO coaches (id, tenant_id, name, email, active)
            VALUES (:id, :tenant_id, :name, :email, :active)
        """),
        {"id": coach_id, "tenant_id": tenant_id, "name": name,
         "email": email, "active": active},
    )


def coach_exists(conn: Connection, tenant_id: str, coach_id: str) -> bool:
    row = conn.execute(
        text("""
            SELECT 1 FROM coaches
            WHERE tenant_id = :tenant_id AND id = :id AND active = :active
        """),
        {"tenant_id": tenant_id, "id": coach_id, "active": True},
    ).first()
    return row is not None


def coach_loads(conn: Connection, tenant_id: str) -> dict[str, int]:
    """Active coach id -> number of assigned members."""
    rows = conn.execute(
        text("""
            SELECT c.id, COUNT(a.member_id)
            FROM coaches c
            LEFT JOIN coach_assignments a
              ON a.coach_id = c.id AND a.tenant_id = c.tenant_id
            WHERE c.tenant_id = :tenant_id AND c.active = :active
            GROUP BY c.id
            ORDER BY c.id
        """),
        {"tenant_id": tenant_id, "active": True},
    ).all()
    return {coach_id: count for coach_id, count in rows}


def list_unassigned_member_ids(conn: Connection, tenant_id: str) -> list[str]:
    rows = conn.execute(
        text("""
            SELECT m.id FROM members m
            WHERE m.tenant_id = :tenant_id
              AND m.status <> 'cancelled'
              AND NOT EXISTS (
                  SELECT 1 FROM coach_assignments a
                  WHERE a.member_id = m.id AND a.tenant_id = m.tenant_id
              )
            ORDER BY m.id
        """),
        {"tenant_id": tenant_id},
    ).all()
    return [r[0] for r in rows]


def upsert_assignment(
    conn: Connection,
    tenant_id: str,
    member_id: str,
    coach_id: str,
    assigned_by: str | None,
    now: datetime,
) -> None:
    """Assign or reassign; one active assignment per member."""
    updated = conn.execute(
        text("""
            UPDATE coach_assignments
            SET coach_id = :coach_id, assigned_by = :assigned_by,
                assigned_at = :assigned_at
            WHERE tenant_id = :tenant_id AND member_id = :member_id
        """),
        {"tenant_id": tenant_id, "member_id": member_id, "coach_id": coach_id,
         "assigned_by": assigned_by, "assigned_at": to_iso(now)},
    ).rowcount
    if updated == 0:
        insert_assignment_if_absent(conn, tenant_id, member_id, coach_id, assigned_by, now)


def insert_assignment_if_absent(
    conn: Connection,
    tenant_id: str,
    member_id: str,
    coach_id: str,
    assigned_by: str | None,
    now: datetime,
) -> bool:
    inserted = conn.execute(
        text("""
            INSERT INTO coach_assignments
            (member_id, tenant_id, coach_id, saved, last_touch_at,
             assigned_at, assigned_by)
            SELECT :member_id, :tenant_id, :coach_id, :saved, NULL,
                   :assigned_at, :assigned_by
            WHERE NOT EXISTS (
                SELECT 1 FROM coach_assignments WHERE member_id = :member_id
            )
        """),
        {"tenant_id": tenant_id, "member_id": member_id, "coach_id": coach_id,
         "saved": False, "assigned_at": to_iso(now), "assigned_by": assigned_by},
    ).rowcount
    return inserted == 1


def get_assignment(
    conn: Connection, tenant_id: str, member_id: str
) -> AssignmentRecord | None:
    row = conn.execute(
        text("""
            SELECT * FROM coach_assignments
            WHERE tenant_id = :tenant_id AND member_id = :member_id
        """),
        {"tenant_id": tenant_id, "member_id": member_id},
    ).mappings().first()
    return _assignment_from_row(row) if row else None


def list_assignments(conn: Connection, tenant_id: str) -> list[AssignmentRecord]:
    rows = conn.execute(
        text("""
            SELECT * FROM coach_assignments
            WHERE tenant_id = :tenant_id
            ORDER BY member_id
        """),
        {"tenant_id": tenant_id},
    ).mappings().all()
    return [_assignment_from_row(r) for r in rows]


def set_assignment_saved(
    conn: Connection, tenant_id: str, member_id: str, saved: bool
) -> bool:
    updated = conn.execute(
        text("""
            UPDATE coach_assignments SET saved = :saved
            WHERE tenant_id = :tenant_id AND member_id = :member_id
        """),
        {"tenant_id": tenant_id, "member_id": member_id, "saved": saved},
    ).rowcount
    return updated == 1


def touch_assignment(
    conn: Connection, tenant_id: str, member_id: str, touched_at: datetime
) -> bool:
    updated = conn.execute(
        text("""
            UPDATE coach_assignments SET last_touch_at = :touched_at
            WHERE tenant_id = :tenant_id AND member_id = :member_id
        """),
        {"tenant_id": tenant_id, "member_id": member_id,
         "touched_at": to_iso(touched_at)},
    ).rowcount
    return updated == 1


def last_touch_by_member(
    conn: Connection, tenant_id: str, member_ids: list[str]
) -> dict[str, datetime]:
    """Most recent coach touch per member from the assignment or the touch log."""
    if not member_ids:
        return {}
    query = text("""
        SELECT member_id, MAX(touched_at) FROM (
            SELECT member_id, last_touch_at AS touched_at FROM coach_assignments
            WHERE tenant_id = :tenant_id AND member_id IN :ids
              AND last_touch_at IS NOT NULL
            UNION ALL
            SELECT member_id, created_at AS touched_at FROM coach_touches
            WHERE tenant_id = :tenant_id AND member_id IN :ids
        ) touches
        GROUP BY member_id
    """).bindparams(bindparam("ids", expanding=True))
    rows = conn.execute(query, {"tenant_id": tenant_id, "ids": member_ids}).all()
    return {member_id: from_iso(touched) for member_id, touched in rows}


def insert_coach_touch(
    conn: Connection,
    tenant_id: str,
    member_id: str,
    coach_id: str,
    channel: str,
    outcome: str,
    notes: str | None,
    now: datetime,
) -> str:
    touch_id = new_id()
    conn.execute(
        text("""
            INSERT INTO coach_touches
            (id, tenant_id, member_id, coach_id, channel, outcome, notes, created_at)
            VALUES (:id, :tenant_id, :member_id, :coach_id, :channel, :outcome,
                    :notes, :created_at)
        """),
        {"id": touch_id, "tenant_id": tenant_id, "member_id": member_id,
         "coach_id": coach_id, "channel": channel, "outcome": outcome,
         "notes": notes, "created_at": to_iso(now)},
    )
    return touch_id


def recent_touch_exists(
    conn: Connection,
    tenant_id: str,
    member_id: str,
    channel: str,
    outcome: str,
    since: datetime,
) -> bool:
    row = conn.execute(
        text("""
            SELECT 1 FROM coach_touches
            WHERE tenant_id = :tenant_id AND member_id = :member_id
              AND channel = :channel AND outcome = :outcome
              AND created_at >= :since
            LIMIT 1
        """),
        {"tenant_id": tenant_id, "member_id": member_id, "channel": channel,
         "outcome": outcome, "since": to_iso(since)},
    ).first()
    return row is not None


# =============================================================================
# Interventions
# =============================================================================


def insert_intervention_if_no_open(conn: Connection, record: InterventionRecord) -> bool:
    """Insert unless the member already has open work of the same type."""
    inserted = conn.execute(
        text("""
            INSERT INTO interventions
            (id, tenant_id, member_id, intervention_type, channel, status,
             reason, rendered_subject, rendered_body, run_date, attempt_count,
             created_at, updated_at)
            SELECT :id, :tenant_id, :member_id, :intervention_type, :channel,
                   :status, :reason, :rendered_subject, :rendered_body,
                   :run_date, 0, :created_at, :updated_at
            WHERE NOT EXISTS (
                SELECT 1 FROM interventions
                WHERE tenant_id = :tenant_id
                  AND member_id = :member_id
                  AND intervention_type = :intervention_type
                  AND status IN ('PENDING_APPROVAL', 'APPROVED')
            )
        """),
        {
            "id": record.id,
            "tenant_id": record.tenant_id,
            "member_id": record.member_id,
            "intervention_type": record.intervention_type,
            "channel": record.channel,
            "status": record.status,
            "reason": record.reason,
            "rendered_subject": record.rendered_subject,
            "rendered_body": record.rendered_body,
            "run_date": record.run_date.isoformat() if record.run_date else None,
            "created_at": to_iso(record.created_at),
            "updated_at": to_iso(record.updated_at),
        },
    ).rowcount
    return inserted == 1


def open_intervention_keys(
    conn: Connection, tenant_id: str, member_ids: list[str]
) -> set[tuple[str, str]]:
    """(member_id, intervention_type) pairs with PENDING_APPROVAL/APPROVED work."""
    if not member_ids:
        return set()
    query = text("""
        SELECT member_id, intervention_type FROM interventions
        WHERE tenant_id = :tenant_id AND member_id IN :ids
          AND status IN ('PENDING_APPROVAL', 'APPROVED')
    """).bindparams(bindparam("ids", expanding=True))
    rows = conn.execute(query, {"tenant_id": tenant_id, "ids": member_ids}).all()
    return {(member_id, itype) for member_id, itype in rows}


def recent_intervention_keys(
    conn: Connection, tenant_id: str, member_ids: list[str], since: date
) -> set[tuple[str, str]]:
    """(member_id, intervention_type) pairs generated on or after ``since``, excluding CANCELLED."""
    if not member_ids:
        return set()
    query = text("""
        SELECT DISTINCT member_id, intervention_type FROM interventions
        WHERE tenant_id = :tenant_id AND member_id IN :ids
          AND status <> 'CANCELLED' AND run_date >= :since
    """).bindparams(bindparam("ids", expanding=True))
    rows = conn.execute(
        query, {"tenant_id": tenant_id, "ids": member_ids, "since": since.isoformat()}
    ).all()
    return {(member_id, itype) for member_id, itype in rows}


def send_counts_since(
    conn: Connection, tenant_id: str, member_ids: list[str], since: datetime
) -> dict[str, int]:
    """SENT/FAILED interventions per member whose send attempt is at or after ``since``."""
    if not member_ids:
        return {}
    query = text("""
        SELECT member_id, COUNT(*) FROM interventions
        WHERE tenant_id = :tenant_id AND member_id IN :ids
          AND status IN ('SENT', 'FAILED')
          AND COALESCE(sent_at, failed_at) >= :since
        GROUP BY member_id
    """).bindparams(bindparam("ids", expanding=True))
    rows = conn.execute(
        query, {"tenant_id": tenant_id, "ids": member_ids, "since": to_iso(since)}
    ).all()
    return {member_id: count for member_id, count in rows}


def get_intervention(
    conn: Connection, tenant_id: str, intervention_id: str
) -> InterventionRecord | None:
    row = conn.execute(
        text("SELECT * FROM interventions WHERE tenant_id = :tenant_id AND id = :id"),
        {"tenant_id": tenant_id, "id": intervention_id},
    ).mappings().first()
    return _intervention_from_row(row) if row else None


def list_interventions(
    conn: Connection,
    tenant_id: str,
    status: str | None = None,
    member_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[InterventionRecord]:
    clauses = ["tenant_id = :tenant_id"]
    params: dict[str, Any] = {"tenant_id": tenant_id, "limit": limit, "offset": offset}
    if status:
        clauses.append("status = :status")
        params["status"] = status
    if member_id:
        clauses.append("member_id = :member_id")
        params["member_id"] = member_id

    rows = conn.execute(
        text(
            f"SELECT * FROM interventions WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, id LIMIT :limit OFFSET :offset"
        ),
        params,
    ).mappings().all()
    return [_intervention_from_row(r) for r in rows]


def count_interventions(conn: Connection, tenant_id: str, status: str) -> int:
    return conn.execute(
        text("""
            SELECT COUNT(*) FROM interventions
            WHERE tenant_id = :tenant_id AND status = :status
        """),
        {"tenant_id": tenant_id, "status": status},
    ).scalar_one()


def update_intervention_status(
    conn: Connection,
    tenant_id: str,
    intervention_id: str,
    expected_status: str,
    new_status: str,
    now: datetime,
    **fields: Any,
) -> bool:
    """Compare-and-set on status. Returns False when another writer got there first.

    Extra keyword fields are written alongside the status; datetimes are
    stored as ISO text.
    """
    assignments = ["status = :new_status", "updated_at = :updated_at"]
    params: dict[str, Any] = {
        "tenant_id": tenant_id,
        "id": intervention_id,
        "expected_status": expected_status,
        "new_status": new_status,
        "updated_at": to_iso(now),
    }
    for name, value in fields.items():
        if name == "attempt_count_increment":
            assignments.append("attempt_count = attempt_count + :attempt_count_increment")
        else:
            assignments.append(f"{name} = :{name}")
        params[name] = to_iso(value) if isinstance(value, datetime) else value

    updated = conn.execute(
        text(
            f"UPDATE interventions SET {', '.join(assignments)} "
            "WHERE tenant_id = :tenant_id AND id = :id AND status = :expected_status"
        ),
        params,
    ).rowcount
    return updated == 1


def list_stale_approved_ids(
    conn: Connection, tenant_id: str, approved_before: datetime
) -> list[str]:
    rows = conn.execute(
        text("""
            SELECT id FROM interventions
            WHERE tenant_id = :tenant_id AND status = 'APPROVED'
              AND updated_at < :before
            ORDER BY id
        """),
        {"tenant_id": tenant_id, "before": to_iso(approved_before)},
    ).all()
    return [r[0] for r in rows]


def insert_message_event(
    conn: Connection,
    tenant_id: str,
    intervention_id: str,
    event_type: str,
    payload: dict[str, Any] | None,
    now: datetime,
) -> None:
    conn.execute(
        text("""
            INSERT INTO message_events
            (id, tenant_id, intervention_id, type, payload, created_at)
            VALUES (:id, :tenant_id, :intervention_id, :type, :payload, :created_at)
        """),
        {"id": new_id(), "tenant_id": tenant_id, "intervention_id": intervention_id,
         "type": event_type, "payload": json.dumps(payload) if payload else None,
         "created_at": to_iso(now)},
    )


def list_message_events(
    conn: Connection, tenant_id: str, intervention_id: str
) -> list[dict[str, Any]]:
    rows = conn.execute(
        text("""
            SELECT type, payload, created_at FROM message_events
            WHERE tenant_id = :tenant_id AND intervention_id = :intervention_id
            ORDER BY created_at, id
        """),
        {"tenant_id": tenant_id, "intervention_id": intervention_id},
    ).mappings().all()
    return [
        {"type": r["type"],
         "payload": json.loads(r["payload"]) if r["payload"] else None,
         "created_at": r["created_at"]}
        for r in rows
    ]


# =============================================================================
# Daily runs
# =============================================================================


def insert_daily_run(
    conn: Connection,
    tenant_id: str,
    run_date: date,
    lease_token: str,
    lease_expires_at: datetime,
    now: datetime,
) -> None:
    """Create the provisional record. Raises IntegrityError if one exists."""
    conn.execute(
        text("""
            INSERT INTO daily_runs
            (tenant_id, run_date, status, members_processed,
             interventions_created, error_count, error_details,
             cursor_member_id, lease_token, lease_expires_at,
             started_at, updated_at, completed_at)
            VALUES (:tenant_id, :run_date, 'IN_PROGRESS', 0, 0, 0, '[]',
                    NULL, :lease_token, :lease_expires_at,
                    :now, :now, NULL)
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat(),
         "lease_token": lease_token, "lease_expires_at": to_iso(lease_expires_at),
         "now": to_iso(now)},
    )


def get_daily_run(
    conn: Connection, tenant_id: str, run_date: date
) -> DailyRunRecord | None:
    row = conn.execute(
        text("""
            SELECT * FROM daily_runs
            WHERE tenant_id = :tenant_id AND run_date = :run_date
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat()},
    ).mappings().first()
    return _daily_run_from_row(row) if row else None


def count_daily_runs(conn: Connection, tenant_id: str, run_date: date) -> int:
    return conn.execute(
        text("""
            SELECT COUNT(*) FROM daily_runs
            WHERE tenant_id = :tenant_id AND run_date = :run_date
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat()},
    ).scalar_one()


def claim_daily_run(
    conn: Connection,
    tenant_id: str,
    run_date: date,
    previous_token: str | None,
    new_token: str,
    lease_expires_at: datetime,
    now: datetime,
) -> bool:
    """Take over an in-progress run whose lease was released or has expired."""
    claimed = conn.execute(
        text("""
            UPDATE daily_runs
            SET lease_token = :new_token, lease_expires_at = :expires,
                updated_at = :now
            WHERE tenant_id = :tenant_id AND run_date = :run_date
              AND status = 'IN_PROGRESS'
              AND COALESCE(lease_token, '') = :previous_token
              AND (lease_token IS NULL OR lease_expires_at < :now)
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat(),
         "previous_token": previous_token or "", "new_token": new_token,
         "expires": to_iso(lease_expires_at), "now": to_iso(now)},
    ).rowcount
    return claimed == 1


def advance_daily_run(
    conn: Connection,
    tenant_id: str,
    run_date: date,
    lease_token: str,
    cursor_member_id: str,
    processed_delta: int,
    created_delta: int,
    error_delta: int,
    error_details: list[str],
    lease_expires_at: datetime,
    now: datetime,
) -> bool:
    """Record progress past cursor_member_id; fails if the lease was lost."""
    updated = conn.execute(
        text("""
            UPDATE daily_runs
            SET cursor_member_id = :cursor,
                members_processed = members_processed + :processed,
                interventions_created = interventions_created + :created,
                error_count = error_count + :errors,
                error_details = :error_details,
                lease_expires_at = :expires,
                updated_at = :now
            WHERE tenant_id = :tenant_id AND run_date = :run_date
              AND status = 'IN_PROGRESS' AND lease_token = :token
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat(),
         "token": lease_token, "cursor": cursor_member_id,
         "processed": processed_delta, "created": created_delta,
         "errors": error_delta, "error_details": json.dumps(error_details),
         "expires": to_iso(lease_expires_at), "now": to_iso(now)},
    ).rowcount
    return updated == 1


def complete_daily_run(
    conn: Connection, tenant_id: str, run_date: date, lease_token: str, now: datetime
) -> bool:
    updated = conn.execute(
        text("""
            UPDATE daily_runs
            SET status = 'COMPLETE', completed_at = :now, updated_at = :now,
                lease_token = NULL, lease_expires_at = NULL
            WHERE tenant_id = :tenant_id AND run_date = :run_date
              AND status = 'IN_PROGRESS' AND lease_token = :token
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat(),
         "token": lease_token, "now": to_iso(now)},
    ).rowcount
    return updated == 1


def release_daily_run(
    conn: Connection, tenant_id: str, run_date: date, lease_token: str, now: datetime
) -> bool:
    """Give up the lease so the next invocation can resume immediately."""
    updated = conn.execute(
        text("""
            UPDATE daily_runs
            SET lease_token = NULL, lease_expires_at = NULL, updated_at = :now
            WHERE tenant_id = :tenant_id AND run_date = :run_date
              AND status = 'IN_PROGRESS' AND lease_token = :token
        """),
        {"tenant_id": tenant_id, "run_date": run_date.isoformat(),
         "token": lease_token, "now": to_iso(now)},
    ).rowcount
    return updated == 1
