"""
Approval workflow for a single intervention.

Every transition is a conditional UPDATE on the expected current status,
so concurrent callers race in the datastore and exactly one wins. Dispatch
runs outside the transaction that approved the record: a slow provider
never holds a row lock, and a crash between approval and send leaves an
APPROVED record that ``fail_stale_approvals`` later moves to FAILED.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from src.data import repository as repo

from .config import EngineConfig
from .dispatch import Dispatcher
from .errors import DispatchError, InterventionNotFoundError, InvalidTransitionError
from .status import InterventionStatus, parse_status, require_transition
from .tenancy import validate_tenant_id

logger = logging.getLogger("retain.interventions.workflow")

PENDING = InterventionStatus.PENDING_APPROVAL.value
APPROVED = InterventionStatus.APPROVED.value
SENT = InterventionStatus.SENT.value
CANCELLED = InterventionStatus.CANCELLED.value
FAILED = InterventionStatus.FAILED.value


@dataclass
class TransitionResult:
    intervention_id: str
    status: InterventionStatus
    success: bool
    error: str | None = None
    provider_message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "intervention_id": self.intervention_id,
            "status": self.status.value,
            "success": self.success,
            "error": self.error,
            "provider_message_id": self.provider_message_id,
        }


class ApprovalWorkflow:
    """
    Atomic transitions on interventions: approve-and-send, cancel, retry.

    Args:
        engine: SQLAlchemy engine for the datastore.
        dispatcher: Sends approved messages; raises DispatchError on failure.
        config: Engine configuration (stale approval cutoff).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        engine: Engine,
        dispatcher: Dispatcher,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = repo.utc_now,
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.clock = clock

    # -------------------------------------------------------------------------
    # Approve
    # -------------------------------------------------------------------------

    def approve_and_send(self, tenant_id: str, intervention_id: str) -> TransitionResult:
        """Approve a PENDING_APPROVAL intervention and dispatch it.

        Raises:
            InterventionNotFoundError: No such intervention in this tenant.
            InvalidTransitionError: Not pending, or another caller approved first.
        """
        validate_tenant_id(tenant_id)
        now = self.clock()

        with self.engine.begin() as conn:
            record = self._get_or_raise(conn, tenant_id, intervention_id)
            # FAILED -> APPROVED is the retry edge, not an approval
            if record.status != PENDING:
                raise InvalidTransitionError(record.status, APPROVED)
            won = repo.update_intervention_status(
                conn, tenant_id, intervention_id, PENDING, APPROVED, now,
                approved_at=now,
            )
            if not won:
                self._raise_lost_race(conn, tenant_id, intervention_id, APPROVED)
            repo.insert_message_event(
                conn, tenant_id, intervention_id, "APPROVED", None, now
            )
            member = repo.get_member(conn, tenant_id, record.member_id)

        logger.info(f"[{tenant_id}] Intervention {intervention_id} approved")
        record.status = APPROVED
        record.approved_at = now
        return self._dispatch(tenant_id, record, member)

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def cancel_intervention(self, tenant_id: str, intervention_id: str) -> TransitionResult:
        """Cancel a pending intervention. Cancelling twice is a no-op success."""
        validate_tenant_id(tenant_id)
        now = self.clock()

        with self.engine.begin() as conn:
            record = self._get_or_raise(conn, tenant_id, intervention_id)
            if record.status == CANCELLED:
                return TransitionResult(intervention_id, InterventionStatus.CANCELLED, True)

            require_transition(record.status, InterventionStatus.CANCELLED)
            won = repo.update_intervention_status(
                conn, tenant_id, intervention_id, PENDING, CANCELLED, now
            )
            if not won:
                current = repo.get_intervention(conn, tenant_id, intervention_id)
                if current is not None and current.status == CANCELLED:
                    return TransitionResult(
                        intervention_id, InterventionStatus.CANCELLED, True
                    )
                self._raise_lost_race(conn, tenant_id, intervention_id, CANCELLED)
            repo.insert_message_event(
                conn, tenant_id, intervention_id, "CANCELLED", None, now
            )

        logger.info(f"[{tenant_id}] Intervention {intervention_id} cancelled")
        return TransitionResult(intervention_id, InterventionStatus.CANCELLED, True)

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    def retry_intervention(self, tenant_id: str, intervention_id: str) -> TransitionResult:
        """Re-approve a FAILED intervention and dispatch it again.

        Refused when the member has meanwhile gained another open
        intervention of the same type.
        """
        validate_tenant_id(tenant_id)
        now = self.clock()

        try:
            with self.engine.begin() as conn:
                record = self._get_or_raise(conn, tenant_id, intervention_id)
                if record.status != FAILED:
                    raise InvalidTransitionError(
                        record.status, APPROVED,
                        f"Only FAILED interventions can be retried (status is {record.status})",
                    )
                won = repo.update_intervention_status(
                    conn, tenant_id, intervention_id, FAILED, APPROVED, now,
                    attempt_count_increment=1,
                    failure_reason=None,
                )
                if not won:
                    self._raise_lost_race(conn, tenant_id, intervention_id, APPROVED)
                repo.insert_message_event(
                    conn, tenant_id, intervention_id, "RETRY",
                    {"attempt": record.attempt_count + 1}, now,
                )
                member = repo.get_member(conn, tenant_id, record.member_id)
        except IntegrityError:
            raise InvalidTransitionError(
                FAILED, APPROVED,
                "Another open intervention of this type exists for the member",
            ) from None

        logger.info(f"[{tenant_id}] Intervention {intervention_id} retried")
        record.status = APPROVED
        record.attempt_count += 1
        return self._dispatch(tenant_id, record, member)

    # -------------------------------------------------------------------------
    # Stale approvals
    # -------------------------------------------------------------------------

    def fail_stale_approvals(
        self, tenant_id: str, older_than: timedelta | None = None
    ) -> int:
        """Move APPROVED interventions whose dispatch never finished to FAILED."""
        validate_tenant_id(tenant_id)
        now = self.clock()
        cutoff = now - (older_than or timedelta(minutes=self.config.stale_approval_minutes))

        with self.engine.connect() as conn:
            stale_ids = repo.list_stale_approved_ids(conn, tenant_id, cutoff)

        failed = 0
        for intervention_id in stale_ids:
            with self.engine.begin() as conn:
                moved = repo.update_intervention_status(
                    conn, tenant_id, intervention_id, APPROVED, FAILED, now,
                    failed_at=now,
                    failure_reason="Dispatch did not complete",
                )
                if moved:
                    repo.insert_message_event(
                        conn, tenant_id, intervention_id, "FAILED",
                        {"reason": "stale approval"}, now,
                    )
                    failed += 1

        if failed:
            logger.warning(f"[{tenant_id}] Marked {failed} stale approvals as FAILED")
        return failed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get_or_raise(self, conn, tenant_id: str, intervention_id: str) -> repo.InterventionRecord:
        record = repo.get_intervention(conn, tenant_id, intervention_id)
        if record is None:
            raise InterventionNotFoundError(intervention_id)
        return record

    def _raise_lost_race(self, conn, tenant_id: str, intervention_id: str, target: str) -> None:
        current = repo.get_intervention(conn, tenant_id, intervention_id)
        status = current.status if current else "MISSING"
        raise InvalidTransitionError(
            status, target,
            f"Intervention {intervention_id} was modified concurrently (now {status})",
        )

    def _dispatch(
        self,
        tenant_id: str,
        record: repo.InterventionRecord,
        member: repo.MemberRecord | None,
    ) -> TransitionResult:
        try:
            if member is None:
                raise DispatchError("Member not found")
            receipt = self.dispatcher.send(record, member)
        except DispatchError as e:
            return self._mark_failed(tenant_id, record.id, str(e))
        except Exception:
            logger.exception(f"[{tenant_id}] Unexpected dispatch error for {record.id}")
            return self._mark_failed(tenant_id, record.id, "Unexpected dispatch error")

        now = self.clock()
        with self.engine.begin() as conn:
            moved = repo.update_intervention_status(
                conn, tenant_id, record.id, APPROVED, SENT, now,
                sent_at=now,
                provider_message_id=receipt.provider_message_id,
            )
            if moved:
                repo.insert_message_event(
                    conn, tenant_id, record.id, "SENT",
                    {"provider": receipt.provider,
                     "provider_message_id": receipt.provider_message_id},
                    now,
                )
            else:
                current = repo.get_intervention(conn, tenant_id, record.id)

        if not moved:
            status = parse_status(current.status) if current else InterventionStatus.FAILED
            logger.warning(
                f"[{tenant_id}] Intervention {record.id} was sent but is now {status.value}"
            )
            return TransitionResult(
                record.id, status, False,
                error="Status changed while sending",
                provider_message_id=receipt.provider_message_id,
            )

        logger.info(f"[{tenant_id}] Intervention {record.id} sent via {receipt.provider}")
        return TransitionResult(
            record.id, InterventionStatus.SENT, True,
            provider_message_id=receipt.provider_message_id,
        )

    def _mark_failed(self, tenant_id: str, intervention_id: str, reason: str) -> TransitionResult:
        now = self.clock()
        with self.engine.begin() as conn:
            moved = repo.update_intervention_status(
                conn, tenant_id, intervention_id, APPROVED, FAILED, now,
                failed_at=now,
                failure_reason=reason,
            )
            if moved:
                repo.insert_message_event(
                    conn, tenant_id, intervention_id, "FAILED", {"reason": reason}, now
                )
        logger.warning(f"[{tenant_id}] Dispatch failed for {intervention_id}: {reason}")
        return TransitionResult(
            intervention_id, InterventionStatus.FAILED, False, error=reason
        )
