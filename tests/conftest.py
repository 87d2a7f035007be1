"""
Shared test fixtures for the Retain Gym test suite.

Provides a schema-initialized SQLite engine per test, factories for
tenants, members, coaches and visits, a frozen clock and a recording
dispatcher so no test touches a real provider.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from src.data import repository as repo
from src.data.database import apply_schema, get_engine
from src.interventions import DispatchError, DispatchReceipt, EngineConfig

TODAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def sqlite_engine(tmp_path):
    """File-backed SQLite engine with the full schema applied."""
    engine = get_engine(f"sqlite:///{tmp_path / 'retain_test.db'}")
    apply_schema(engine)
    yield engine
    engine.dispose()


# =============================================================================
# Clock and Config Fixtures
# =============================================================================


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def engine_config():
    """Engine config with small batches and single-threaded scoring."""
    return EngineConfig(run_batch_size=2, scoring_workers=1)


# =============================================================================
# Dispatcher Fixtures
# =============================================================================


class RecordingDispatcher:
    """Dispatcher that records sends and can be told to fail."""

    def __init__(self):
        self.sent: list[str] = []
        self.fail_with: str | None = None

    def send(self, intervention, member):
        if self.fail_with:
            raise DispatchError(self.fail_with)
        self.sent.append(intervention.id)
        return DispatchReceipt(provider="test", provider_message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


# =============================================================================
# Data Factories
# =============================================================================


@pytest.fixture
def make_tenant(sqlite_engine):
    """Factory: create a tenant row."""

    def _create(tenant_id: str = "gym-1", name: str = "Test Gym") -> str:
        with sqlite_engine.begin() as conn:
            repo.insert_tenant(conn, tenant_id, name)
        return tenant_id

    return _create


@pytest.fixture
def make_member(sqlite_engine):
    """Factory: create a member with visits given as days before TODAY."""

    def _create(
        tenant_id: str,
        member_id: str,
        visit_ages: list[int] | None = None,
        joined_days_ago: int = 365,
        **fields,
    ) -> repo.MemberRecord:
        member = repo.MemberRecord(
            id=member_id,
            tenant_id=tenant_id,
            first_name=fields.pop("first_name", member_id.title()),
            email=fields.pop("email", f"{member_id}@example.com"),
            joined_date=TODAY - timedelta(days=joined_days_ago),
            **fields,
        )
        with sqlite_engine.begin() as conn:
            repo.insert_member(conn, member)
            for age in visit_ages or []:
                repo.insert_engagement(conn, tenant_id, member_id, TODAY - timedelta(days=age))
        return member

    return _create


@pytest.fixture
def make_coach(sqlite_engine):
    """Factory: create an active coach."""

    def _create(tenant_id: str, coach_id: str, name: str | None = None) -> str:
        with sqlite_engine.begin() as conn:
            repo.insert_coach(conn, tenant_id, coach_id, name or coach_id.title())
        return coach_id

    return _create


@pytest.fixture
def overdue_member_visits() -> list[int]:
    """Visits every 3 days from 60 to 12 days ago.

    Scores in the mid 50s with only overdue_touch and declining_frequency
    raised, so exactly one COACH_CHECK_IN is generated.
    """
    return list(range(12, 61, 3))
