"""
Tests for coach assignment tracking.
"""

from datetime import timedelta

import pytest

from src.coaching import (
    CoachAssignmentTracker,
    CoachNotFoundError,
    DuplicateTouchError,
    MemberNotFoundError,
)
from src.data import repository as repo
from src.interventions import PreconditionError
from src.scoring import EngagementHistory, RiskFlag, RiskScorer, ScoringConfig

from tests.conftest import NOW, TODAY


@pytest.fixture
def tracker(sqlite_engine, clock):
    return CoachAssignmentTracker(sqlite_engine, ScoringConfig(), clock=clock)


@pytest.fixture
def gym(make_tenant, make_member, make_coach):
    make_tenant("gym-1")
    for member_id in ("m-1", "m-2", "m-3"):
        make_member("gym-1", member_id, [5])
    make_coach("gym-1", "coach-a")
    make_coach("gym-1", "coach-b")
    return "gym-1"


class TestAssignCoach:
    """Tests for manual assignment."""

    def test_assign_and_reassign(self, tracker, gym):
        first = tracker.assign_coach(gym, "m-1", "coach-a", assigned_by="manager")
        assert first.coach_id == "coach-a"
        assert first.assigned_by == "manager"
        assert first.assigned_at == NOW

        second = tracker.assign_coach(gym, "m-1", "coach-b")
        assert second.coach_id == "coach-b"

    def test_unknown_member(self, tracker, gym):
        with pytest.raises(MemberNotFoundError):
            tracker.assign_coach(gym, "nobody", "coach-a")

    def test_unknown_coach(self, tracker, gym):
        with pytest.raises(CoachNotFoundError):
            tracker.assign_coach(gym, "m-1", "coach-z")

    def test_coach_from_other_tenant_rejected(self, tracker, gym, make_tenant, make_coach):
        make_tenant("gym-2")
        make_coach("gym-2", "coach-elsewhere")
        with pytest.raises(CoachNotFoundError):
            tracker.assign_coach(gym, "m-1", "coach-elsewhere")

    def test_errors_are_preconditions(self, tracker, gym):
        with pytest.raises(PreconditionError):
            tracker.assign_coach(gym, "nobody", "coach-a")


class TestAutoAssign:
    """Tests for least-loaded auto-assignment."""

    def test_balances_across_coaches(self, tracker, sqlite_engine, gym):
        assert tracker.auto_assign(gym) == 3

        with sqlite_engine.connect() as conn:
            loads = repo.coach_loads(conn, gym)
            assignments = {a.member_id: a for a in repo.list_assignments(conn, gym)}
        assert loads == {"coach-a": 2, "coach-b": 1}
        # Ties go to the lowest coach id
        assert assignments["m-1"].coach_id == "coach-a"
        assert assignments["m-2"].coach_id == "coach-b"
        assert assignments["m-3"].coach_id == "coach-a"
        assert all(a.assigned_by == "auto" for a in assignments.values())

    def test_respects_existing_load(self, tracker, sqlite_engine, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")

        assert tracker.auto_assign(gym) == 2
        with sqlite_engine.connect() as conn:
            assert repo.coach_loads(conn, gym) == {"coach-a": 2, "coach-b": 1}

    def test_second_run_assigns_nothing(self, tracker, gym):
        tracker.auto_assign(gym)
        assert tracker.auto_assign(gym) == 0

    def test_no_coaches(self, tracker, make_tenant, make_member):
        make_tenant("empty-gym")
        make_member("empty-gym", "m-9", [])
        assert tracker.auto_assign("empty-gym") == 0

    def test_cancelled_members_skipped(self, tracker, sqlite_engine, gym, make_member):
        make_member(gym, "m-4", [], status="cancelled")
        tracker.auto_assign(gym)
        with sqlite_engine.connect() as conn:
            assert repo.get_assignment(conn, gym, "m-4") is None


class TestOverdue:
    """Tests for overdue follow-up detection."""

    def test_never_touched_uses_assignment_time(self, tracker, clock, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")

        assert tracker.overdue_assignments(gym) == []
        clock.advance(days=11)
        overdue = tracker.overdue_assignments(gym)
        assert [o.member_id for o in overdue] == ["m-1"]
        assert overdue[0].days_since_touch == 11
        assert overdue[0].last_touch_at is None

    def test_touch_resets_the_clock(self, tracker, clock, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")
        clock.advance(days=8)
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")
        clock.advance(days=8)

        assert tracker.overdue_assignments(gym) == []

    def test_sorted_most_overdue_first(self, tracker, clock, gym):
        tracker.assign_coach(gym, "m-2", "coach-a")
        clock.advance(days=5)
        tracker.assign_coach(gym, "m-1", "coach-b")
        clock.advance(days=20)

        overdue = tracker.overdue_assignments(gym)
        assert [(o.member_id, o.days_since_touch) for o in overdue] == [
            ("m-2", 25), ("m-1", 20)
        ]
        assert overdue[0].to_dict()["coach_id"] == "coach-a"

    def test_explicit_now(self, tracker, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")
        assert len(tracker.overdue_assignments(gym, now=NOW + timedelta(days=30))) == 1


class TestMarkSaved:
    """Tests for the saved retention flag."""

    def test_mark_and_unmark(self, tracker, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")
        assert tracker.mark_saved(gym, "m-1", True).saved is True
        assert tracker.mark_saved(gym, "m-1", False).saved is False

    def test_requires_assignment(self, tracker, gym):
        with pytest.raises(PreconditionError, match="no coach assignment"):
            tracker.mark_saved(gym, "m-1", True)

    def test_unknown_member(self, tracker, gym):
        with pytest.raises(MemberNotFoundError):
            tracker.mark_saved(gym, "ghost", True)


class TestRecordTouch:
    """Tests for coach touch logging."""

    def test_touch_refreshes_assignment(self, tracker, sqlite_engine, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")
        touch_id = tracker.record_touch(gym, "m-1", "coach-a", "sms", "no_answer", "left voicemail")

        assert touch_id
        with sqlite_engine.connect() as conn:
            assert repo.get_assignment(conn, gym, "m-1").last_touch_at == NOW
            assert repo.last_touch_by_member(conn, gym, ["m-1", "m-2"]) == {"m-1": NOW}

    def test_duplicate_within_window(self, tracker, clock, gym):
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")
        clock.advance(minutes=90)

        with pytest.raises(DuplicateTouchError):
            tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")

    def test_different_outcome_is_not_duplicate(self, tracker, gym):
        tracker.record_touch(gym, "m-1", "coach-a", "call", "no_answer")
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")

    def test_same_touch_after_window(self, tracker, clock, gym):
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")
        clock.advance(hours=2, minutes=1)
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")

    def test_unknown_coach(self, tracker, gym):
        with pytest.raises(CoachNotFoundError):
            tracker.record_touch(gym, "m-1", "coach-z", "call", "reached")

    def test_touch_clears_overdue_flag(
        self, tracker, sqlite_engine, clock, make_tenant, make_member, make_coach,
        overdue_member_visits,
    ):
        make_tenant("gym-1")
        make_member("gym-1", "m-1", overdue_member_visits)
        make_coach("gym-1", "coach-a")
        tracker.assign_coach("gym-1", "m-1", "coach-a")
        scorer = RiskScorer(ScoringConfig())

        def current_score():
            with sqlite_engine.connect() as conn:
                visits = repo.visit_dates_by_member(conn, "gym-1", ["m-1"])["m-1"]
                touches = repo.last_touch_by_member(conn, "gym-1", ["m-1"])
            history = EngagementHistory(visit_dates=visits, last_coach_touch=touches.get("m-1"))
            return scorer.score(history, TODAY)

        assert current_score().has(RiskFlag.OVERDUE_TOUCH)

        clock.advance(hours=-2)
        tracker.record_touch("gym-1", "m-1", "coach-a", "call", "reached")

        assert not current_score().has(RiskFlag.OVERDUE_TOUCH)

    def test_touch_without_assignment_counts_as_last_touch(self, tracker, sqlite_engine, gym):
        tracker.record_touch(gym, "m-2", "coach-b", "call", "reached")

        with sqlite_engine.connect() as conn:
            assert repo.get_assignment(conn, gym, "m-2") is None
            assert repo.last_touch_by_member(conn, gym, ["m-2"]) == {"m-2": NOW}

    def test_latest_of_assignment_and_log_wins(self, tracker, sqlite_engine, clock, gym):
        tracker.assign_coach(gym, "m-1", "coach-a")
        tracker.record_touch(gym, "m-1", "coach-a", "call", "reached")
        clock.advance(days=1)
        with sqlite_engine.begin() as conn:
            repo.insert_coach_touch(conn, gym, "m-1", "coach-a", "sms", "reached", None, clock())

        with sqlite_engine.connect() as conn:
            assert repo.last_touch_by_member(conn, gym, ["m-1"]) == {"m-1": NOW + timedelta(days=1)}
