"""
Deterministic fixture data for demo mode.

Seeds a small gym whose members cover every intervention path: a lapsed
regular, a brand-new member who never showed up, a member in decline, an
SMS-only member and a do-not-contact member whose send is refused by the
guardrails. Visit dates are relative to ``today`` so the demo always looks
current. A second tenant exists to show tenant isolation.
"""

from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import Engine

from src.data import repository as repo

DEMO_TENANT_ID = "demo-tenant"
SECOND_TENANT_ID = "north-gym"

_COACHES = [
    {"id": "coach-ava", "name": "Ava Mitchell", "email": "ava@riverside.example"},
    {"id": "coach-ben", "name": "Ben Okafor", "email": "ben@riverside.example"},
]

# member id -> (first, last, email, phone, consent_sms, do_not_contact, status, joined days ago)
_MEMBERS = {
    "mem-001": ("Maria", "Santos", "maria.santos@email.com", None, False, False, "active", 400),
    "mem-002": ("James", "Wilson", "james.wilson@email.com", None, False, False, "active", 220),
    "mem-003": ("Priya", "Shah", "priya.shah@email.com", None, False, False, "active", 10),
    "mem-004": ("Tom", "Becker", "tom.becker@email.com", None, False, False, "active", 180),
    "mem-005": ("Sofia", "Rossi", None, "+447700900123", True, False, "active", 300),
    "mem-006": ("Liam", "Byrne", "liam.byrne@email.com", None, False, True, "active", 260),
    "mem-007": ("Chloe", "Martin", "chloe.martin@email.com", None, False, False, "cancelled", 500),
}


def _visit_ages(member_id: str) -> list[int]:
    """Days-before-today of each visit for a demo member."""
    if member_id == "mem-001":
        return list(range(1, 60, 2))                      # steady regular
    if member_id == "mem-002":
        return list(range(20, 80, 3))                     # lapsed three weeks ago
    if member_id == "mem-003":
        return []                                         # joined, never visited
    if member_id == "mem-004":
        return [3, 10, 17, 24] + list(range(31, 61, 2))   # sharp decline
    if member_id in ("mem-005", "mem-006"):
        return list(range(25, 90, 4))
    return list(range(100, 160, 5))


def seed_demo_data(engine: Engine, today: date | None = None) -> None:
    """Insert demo tenants, coaches, members, visits and assignments."""
    today = today or datetime.now(timezone.utc).date()

    def at(days_ago: int) -> datetime:
        return datetime.combine(today - timedelta(days=days_ago), time(9, 0), tzinfo=timezone.utc)

    with engine.begin() as conn:
        repo.insert_tenant(conn, DEMO_TENANT_ID, "Riverside Strength Club")
        repo.insert_tenant(conn, SECOND_TENANT_ID, "North Gym")

        for coach in _COACHES:
            repo.insert_coach(conn, DEMO_TENANT_ID, coach["id"], coach["name"], coach["email"])
        repo.insert_coach(conn, SECOND_TENANT_ID, "coach-north", "Nadia Karim")

        for member_id, fields in _MEMBERS.items():
            first, last, email, phone, consent_sms, dnc, status, joined = fields
            repo.insert_member(
                conn,
                repo.MemberRecord(
                    id=member_id,
                    tenant_id=DEMO_TENANT_ID,
                    first_name=first,
                    last_name=last,
                    email=email,
                    phone=phone,
                    joined_date=today - timedelta(days=joined),
                    consent_email=email is not None,
                    consent_sms=consent_sms,
                    do_not_contact=dnc,
                    status=status,
                ),
            )
            for age in _visit_ages(member_id):
                repo.insert_engagement(conn, DEMO_TENANT_ID, member_id, today - timedelta(days=age))

        repo.insert_member(
            conn,
            repo.MemberRecord(
                id="mem-101",
                tenant_id=SECOND_TENANT_ID,
                first_name="Oscar",
                last_name="Lind",
                email="oscar.lind@email.com",
                joined_date=today - timedelta(days=90),
            ),
        )
        for age in range(30, 90, 3):
            repo.insert_engagement(conn, SECOND_TENANT_ID, "mem-101", today - timedelta(days=age))

        repo.upsert_assignment(conn, DEMO_TENANT_ID, "mem-002", "coach-ava", "seed", at(40))
        repo.touch_assignment(conn, DEMO_TENANT_ID, "mem-002", at(15))
        repo.upsert_assignment(conn, DEMO_TENANT_ID, "mem-004", "coach-ben", "seed", at(30))
        repo.touch_assignment(conn, DEMO_TENANT_ID, "mem-004", at(2))
