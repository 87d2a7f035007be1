"""
Tests for the approval workflow: approve-and-send, cancel, retry and the
stale approval sweep.
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from src.data import repository as repo
from src.interventions import (
    ApprovalWorkflow,
    ChannelDispatcher,
    EngineConfig,
    InterventionNotFoundError,
    InterventionStatus,
    InvalidTenantError,
    InvalidTransitionError,
)

from tests.conftest import NOW


def load(engine, tenant_id, intervention_id):
    with engine.connect() as conn:
        return repo.get_intervention(conn, tenant_id, intervention_id)


def event_types(engine, tenant_id, intervention_id):
    with engine.connect() as conn:
        # Events written under a frozen clock share a timestamp
        return sorted(e["type"] for e in repo.list_message_events(conn, tenant_id, intervention_id))


@pytest.fixture
def make_intervention(sqlite_engine):
    """Factory: insert an intervention directly in a given status."""

    def _create(
        tenant_id: str = "gym-1",
        member_id: str = "m-1",
        intervention_type: str = "WIN_BACK",
        status: str = "PENDING_APPROVAL",
        channel: str = "EMAIL",
    ) -> str:
        record = repo.InterventionRecord(
            id=repo.new_id(),
            tenant_id=tenant_id,
            member_id=member_id,
            intervention_type=intervention_type,
            channel=channel,
            status=status,
            rendered_subject="We've missed you",
            rendered_body="Hi there",
            created_at=NOW,
            updated_at=NOW,
        )
        with sqlite_engine.begin() as conn:
            assert repo.insert_intervention_if_no_open(conn, record)
        return record.id

    return _create


@pytest.fixture
def gym(make_tenant, make_member):
    make_tenant("gym-1")
    make_member("gym-1", "m-1", [20, 25])
    return "gym-1"


@pytest.fixture
def workflow(sqlite_engine, dispatcher, clock):
    return ApprovalWorkflow(sqlite_engine, dispatcher, EngineConfig(), clock=clock)


class TestApproveAndSend:
    """Tests for approve_and_send."""

    def test_pending_is_approved_and_sent(self, workflow, sqlite_engine, dispatcher, gym, make_intervention):
        intervention_id = make_intervention()

        result = workflow.approve_and_send(gym, intervention_id)

        assert result.success
        assert result.status is InterventionStatus.SENT
        assert result.provider_message_id == "msg-1"
        record = load(sqlite_engine, gym, intervention_id)
        assert record.status == "SENT"
        assert record.approved_at == NOW
        assert record.sent_at == NOW
        assert record.provider_message_id == "msg-1"
        assert dispatcher.sent == [intervention_id]
        assert event_types(sqlite_engine, gym, intervention_id) == ["APPROVED", "SENT"]

    def test_second_approve_fails_without_resending(self, workflow, dispatcher, gym, make_intervention):
        intervention_id = make_intervention()
        workflow.approve_and_send(gym, intervention_id)

        with pytest.raises(InvalidTransitionError):
            workflow.approve_and_send(gym, intervention_id)
        assert dispatcher.sent == [intervention_id]

    def test_concurrent_approvers_have_one_winner(
        self, workflow, sqlite_engine, dispatcher, gym, make_intervention, monkeypatch
    ):
        intervention_id = make_intervention()
        stale = load(sqlite_engine, gym, intervention_id)
        workflow.approve_and_send(gym, intervention_id)

        # The losing approver read the record before the winner committed
        real_get = repo.get_intervention
        reads = []

        def stale_first_read(conn, tenant_id, iid):
            reads.append(iid)
            return replace(stale) if len(reads) == 1 else real_get(conn, tenant_id, iid)

        monkeypatch.setattr(repo, "get_intervention", stale_first_read)

        with pytest.raises(InvalidTransitionError, match="modified concurrently"):
            workflow.approve_and_send(gym, intervention_id)
        assert dispatcher.sent == [intervention_id]
        monkeypatch.undo()
        assert load(sqlite_engine, gym, intervention_id).status == "SENT"

    @pytest.mark.parametrize("status", ["CANCELLED", "SENT", "APPROVED", "FAILED"])
    def test_non_pending_rejected_and_unchanged(
        self, workflow, sqlite_engine, dispatcher, gym, make_intervention, status
    ):
        intervention_id = make_intervention(status=status)
        before = load(sqlite_engine, gym, intervention_id)

        with pytest.raises(
            InvalidTransitionError, match=f"Cannot move intervention from {status} to APPROVED"
        ):
            workflow.approve_and_send(gym, intervention_id)

        assert load(sqlite_engine, gym, intervention_id) == before
        assert dispatcher.sent == []

    def test_unknown_id(self, workflow, gym):
        with pytest.raises(InterventionNotFoundError):
            workflow.approve_and_send(gym, "does-not-exist")

    def test_other_tenant_cannot_approve(self, workflow, make_tenant, gym, make_intervention):
        make_tenant("gym-2")
        intervention_id = make_intervention()

        with pytest.raises(InterventionNotFoundError):
            workflow.approve_and_send("gym-2", intervention_id)

    def test_invalid_tenant(self, workflow):
        with pytest.raises(InvalidTenantError):
            workflow.approve_and_send("bad tenant!", "x")

    def test_dispatch_failure_marks_failed_and_keeps_approval(
        self, workflow, sqlite_engine, dispatcher, clock, gym, make_intervention
    ):
        intervention_id = make_intervention()
        dispatcher.fail_with = "provider down"
        clock.advance(seconds=5)

        result = workflow.approve_and_send(gym, intervention_id)

        assert not result.success
        assert result.status is InterventionStatus.FAILED
        assert result.error == "provider down"
        record = load(sqlite_engine, gym, intervention_id)
        assert record.status == "FAILED"
        assert record.approved_at == NOW + timedelta(seconds=5)
        assert record.failed_at is not None
        assert record.sent_at is None
        assert record.failure_reason == "provider down"
        assert event_types(sqlite_engine, gym, intervention_id) == ["APPROVED", "FAILED"]

    def test_unexpected_dispatch_error_marks_failed(
        self, sqlite_engine, clock, gym, make_intervention
    ):
        class ExplodingDispatcher:
            def send(self, intervention, member):
                raise RuntimeError("socket closed")

        workflow = ApprovalWorkflow(sqlite_engine, ExplodingDispatcher(), clock=clock)
        intervention_id = make_intervention()

        result = workflow.approve_and_send(gym, intervention_id)

        assert result.status is InterventionStatus.FAILED
        assert load(sqlite_engine, gym, intervention_id).failure_reason == "Unexpected dispatch error"

    def test_guardrail_blocks_do_not_contact(
        self, sqlite_engine, clock, make_tenant, make_member, make_intervention
    ):
        make_tenant("gym-1")
        make_member("gym-1", "m-1", [], do_not_contact=True)
        workflow = ApprovalWorkflow(sqlite_engine, ChannelDispatcher.for_demo(), clock=clock)
        intervention_id = make_intervention()

        result = workflow.approve_and_send("gym-1", intervention_id)

        assert result.status is InterventionStatus.FAILED
        assert "do-not-contact" in result.error

    def test_guardrail_blocks_sms_without_consent(
        self, sqlite_engine, clock, make_tenant, make_member, make_intervention
    ):
        make_tenant("gym-1")
        make_member("gym-1", "m-1", [], email=None, phone="+447700900000", consent_sms=False)
        workflow = ApprovalWorkflow(sqlite_engine, ChannelDispatcher.for_demo(), clock=clock)
        intervention_id = make_intervention(channel="SMS")

        result = workflow.approve_and_send("gym-1", intervention_id)

        assert result.status is InterventionStatus.FAILED
        assert "consented to SMS" in result.error


class TestCancel:
    """Tests for cancel_intervention."""

    def test_cancel_pending(self, workflow, sqlite_engine, gym, make_intervention):
        intervention_id = make_intervention()

        result = workflow.cancel_intervention(gym, intervention_id)

        assert result.success
        assert load(sqlite_engine, gym, intervention_id).status == "CANCELLED"
        assert event_types(sqlite_engine, gym, intervention_id) == ["CANCELLED"]

    def test_double_cancel_succeeds(self, workflow, sqlite_engine, gym, make_intervention):
        intervention_id = make_intervention()
        workflow.cancel_intervention(gym, intervention_id)

        result = workflow.cancel_intervention(gym, intervention_id)

        assert result.success
        assert result.status is InterventionStatus.CANCELLED
        assert event_types(sqlite_engine, gym, intervention_id) == ["CANCELLED"]

    @pytest.mark.parametrize("status", ["APPROVED", "SENT", "FAILED"])
    def test_cancel_rejected_after_approval(self, workflow, sqlite_engine, gym, make_intervention, status):
        intervention_id = make_intervention(status=status)

        with pytest.raises(InvalidTransitionError):
            workflow.cancel_intervention(gym, intervention_id)
        assert load(sqlite_engine, gym, intervention_id).status == status

    def test_cancel_unknown(self, workflow, gym):
        with pytest.raises(InterventionNotFoundError):
            workflow.cancel_intervention(gym, "missing")


class TestRetry:
    """Tests for retry_intervention."""

    def test_failed_then_retry_sends(self, workflow, sqlite_engine, dispatcher, clock, gym, make_intervention):
        intervention_id = make_intervention()
        dispatcher.fail_with = "timeout"
        workflow.approve_and_send(gym, intervention_id)
        first_approval = load(sqlite_engine, gym, intervention_id).approved_at

        dispatcher.fail_with = None
        clock.advance(minutes=10)
        result = workflow.retry_intervention(gym, intervention_id)

        assert result.success
        record = load(sqlite_engine, gym, intervention_id)
        assert record.status == "SENT"
        assert record.attempt_count == 1
        assert record.approved_at == first_approval
        assert record.failure_reason is None
        assert event_types(sqlite_engine, gym, intervention_id) == [
            "APPROVED", "FAILED", "RETRY", "SENT"
        ]

    @pytest.mark.parametrize("status", ["PENDING_APPROVAL", "SENT", "CANCELLED"])
    def test_only_failed_can_retry(self, workflow, gym, make_intervention, status):
        intervention_id = make_intervention(status=status)
        with pytest.raises(InvalidTransitionError):
            workflow.retry_intervention(gym, intervention_id)

    def test_retry_refused_when_new_open_work_exists(
        self, workflow, sqlite_engine, dispatcher, gym, make_intervention
    ):
        failed_id = make_intervention(status="FAILED")
        make_intervention(status="PENDING_APPROVAL")

        with pytest.raises(InvalidTransitionError, match="Another open intervention"):
            workflow.retry_intervention(gym, failed_id)
        assert load(sqlite_engine, gym, failed_id).status == "FAILED"
        assert dispatcher.sent == []


class TestStaleApprovals:
    """Tests for fail_stale_approvals."""

    def test_stuck_approval_is_failed(self, workflow, sqlite_engine, clock, gym, make_intervention):
        intervention_id = make_intervention()
        with sqlite_engine.begin() as conn:
            repo.update_intervention_status(
                conn, gym, intervention_id, "PENDING_APPROVAL", "APPROVED", NOW, approved_at=NOW
            )

        assert workflow.fail_stale_approvals(gym) == 0

        clock.advance(minutes=31)
        assert workflow.fail_stale_approvals(gym) == 1
        record = load(sqlite_engine, gym, intervention_id)
        assert record.status == "FAILED"
        assert record.approved_at == NOW
        assert workflow.fail_stale_approvals(gym) == 0

    def test_custom_cutoff(self, workflow, sqlite_engine, clock, gym, make_intervention):
        intervention_id = make_intervention()
        with sqlite_engine.begin() as conn:
            repo.update_intervention_status(
                conn, gym, intervention_id, "PENDING_APPROVAL", "APPROVED", NOW, approved_at=NOW
            )
        clock.advance(minutes=2)

        assert workflow.fail_stale_approvals(gym, older_than=timedelta(minutes=1)) == 1
