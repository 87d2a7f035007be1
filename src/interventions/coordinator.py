"""
Daily run coordinator.

Runs scoring and intervention generation once per tenant per calendar day.
The ``daily_runs`` row is the idempotency anchor: its primary key makes
creation race-safe, its lease token makes ownership exclusive, and its
cursor makes a run resumable after a crash or an exhausted time budget.

Each batch of members is written in a single transaction that also
advances the cursor, so after any crash either the whole batch and its
progress are committed or none of it is.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.data import repository as repo
from src.scoring import CommitmentScore, EngagementHistory, RiskScorer

from .config import EngineConfig
from .errors import InterventionEngineError, LeaseLostError
from .generator import (
    ContactHistory,
    InterventionCandidate,
    InterventionGenerator,
    MemberAssessment,
    MemberError,
)
from .tenancy import validate_tenant_id

logger = logging.getLogger("retain.interventions.coordinator")

COMPLETED = "completed"
ALREADY_COMPLETED = "already_completed"
IN_PROGRESS_ELSEWHERE = "in_progress_elsewhere"
PARTIAL = "partial"
FAILED = "failed"

WEEK_DAYS = 7


@dataclass
class RunSummary:
    tenant_id: str
    run_date: date
    outcome: str
    members_processed: int = 0
    interventions_created: int = 0
    errors: int = 0
    error_details: list[str] = field(default_factory=list)
    complete: bool = False

    @classmethod
    def from_record(cls, record: repo.DailyRunRecord, outcome: str) -> "RunSummary":
        return cls(
            tenant_id=record.tenant_id,
            run_date=record.run_date,
            outcome=outcome,
            members_processed=record.members_processed,
            interventions_created=record.interventions_created,
            errors=record.error_count,
            error_details=list(record.error_details),
            complete=record.status == "COMPLETE",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "run_date": self.run_date.isoformat(),
            "outcome": self.outcome,
            "members_processed": self.members_processed,
            "interventions_created": self.interventions_created,
            "errors": self.errors,
            "error_details": list(self.error_details),
            "complete": self.complete,
        }


@dataclass
class BatchOutcome:
    created: int = 0
    errors: list[MemberError] = field(default_factory=list)


class DailyRunCoordinator:
    """
    Executes the daily scoring and generation pass for one tenant.

    Args:
        engine: SQLAlchemy engine for the datastore.
        config: Engine configuration (batch size, time budget, lease).
        clock: Returns the current UTC time; used for timestamps and leases.
        monotonic: Returns seconds for the time budget; injectable for tests.
        gym_name: Used when rendering message templates.
    """

    def __init__(
        self,
        engine: Engine,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = repo.utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        gym_name: str = "your gym",
    ):
        self.engine = engine
        self.config = config or EngineConfig()
        self.clock = clock
        self.monotonic = monotonic
        self.scorer = RiskScorer(self.config.scoring)
        self.generator = InterventionGenerator(self.config, gym_name=gym_name)

    def run(self, tenant_id: str, as_of_date: date | None = None) -> RunSummary:
        """Run (or resume) the daily pass for a tenant.

        Raises:
            InvalidTenantError: Tenant id missing or malformed; nothing is written.
        """
        validate_tenant_id(tenant_id)
        run_date = as_of_date or self.clock().date()
        token = uuid.uuid4().hex

        acquired = self._acquire(tenant_id, run_date, token)
        if isinstance(acquired, RunSummary):
            return acquired

        try:
            return self._execute(tenant_id, run_date, token, acquired)
        except LeaseLostError:
            logger.warning(f"[{tenant_id}] Lost lease on run {run_date}; stopping")
            return self._summary(tenant_id, run_date, IN_PROGRESS_ELSEWHERE)

    # -------------------------------------------------------------------------
    # Lease handling
    # -------------------------------------------------------------------------

    def _lease_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.config.run_lease_seconds)

    def _acquire(
        self, tenant_id: str, run_date: date, token: str
    ) -> repo.DailyRunRecord | RunSummary:
        """Create or take over the run record; a RunSummary means no work to do."""
        now = self.clock()
        try:
            with self.engine.begin() as conn:
                repo.insert_daily_run(
                    conn, tenant_id, run_date, token, self._lease_expiry(now), now
                )
                record = repo.get_daily_run(conn, tenant_id, run_date)
            logger.info(f"[{tenant_id}] Starting daily run for {run_date}")
            return record
        except IntegrityError:
            pass

        with self.engine.connect() as conn:
            existing = repo.get_daily_run(conn, tenant_id, run_date)
        if existing is None:
            raise InterventionEngineError(
                f"Daily run record for {tenant_id}/{run_date} vanished during acquire"
            )

        if existing.status == "COMPLETE":
            logger.info(f"[{tenant_id}] Daily run for {run_date} already completed")
            return RunSummary.from_record(existing, ALREADY_COMPLETED)

        if existing.lease_token and existing.lease_expires_at and existing.lease_expires_at > now:
            logger.info(f"[{tenant_id}] Daily run for {run_date} is held by another runner")
            return RunSummary.from_record(existing, IN_PROGRESS_ELSEWHERE)

        with self.engine.begin() as conn:
            claimed = repo.claim_daily_run(
                conn, tenant_id, run_date, existing.lease_token, token,
                self._lease_expiry(now), now,
            )
            record = repo.get_daily_run(conn, tenant_id, run_date)
        if not claimed:
            outcome = ALREADY_COMPLETED if record.status == "COMPLETE" else IN_PROGRESS_ELSEWHERE
            return RunSummary.from_record(record, outcome)

        logger.info(
            f"[{tenant_id}] Resuming daily run for {run_date} "
            f"after member {record.cursor_member_id or '(start)'}"
        )
        return record

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def _execute(
        self, tenant_id: str, run_date: date, token: str, record: repo.DailyRunRecord
    ) -> RunSummary:
        cfg = self.config
        started = self.monotonic()
        cursor = record.cursor_member_id
        error_details = list(record.error_details)
        batches = 0

        while True:
            with self.engine.connect() as conn:
                members = repo.fetch_member_batch(conn, tenant_id, cursor, cfg.run_batch_size)

            if not members:
                now = self.clock()
                with self.engine.begin() as conn:
                    if not repo.complete_daily_run(conn, tenant_id, run_date, token, now):
                        raise LeaseLostError(f"Lease lost before completing {run_date}")
                summary = self._summary(tenant_id, run_date, COMPLETED)
                logger.info(
                    f"[{tenant_id}] Daily run {run_date} complete: "
                    f"{summary.members_processed} members, "
                    f"{summary.interventions_created} interventions, "
                    f"{summary.errors} errors"
                )
                return summary

            if batches > 0 and self.monotonic() - started >= cfg.run_time_budget_seconds:
                with self.engine.begin() as conn:
                    repo.release_daily_run(conn, tenant_id, run_date, token, self.clock())
                logger.info(
                    f"[{tenant_id}] Time budget exhausted after {batches} batches; "
                    f"run {run_date} will resume after member {cursor}"
                )
                return self._summary(tenant_id, run_date, PARTIAL)

            self._process_batch(tenant_id, run_date, token, members, error_details)
            cursor = members[-1].id
            batches += 1

    def _process_batch(
        self,
        tenant_id: str,
        run_date: date,
        token: str,
        members: list[repo.MemberRecord],
        error_details: list[str],
    ) -> None:
        member_ids = [m.id for m in members]
        with self.engine.connect() as conn:
            visits = repo.visit_dates_by_member(conn, tenant_id, member_ids)
            touches = repo.last_touch_by_member(conn, tenant_id, member_ids)
            open_keys = repo.open_intervention_keys(conn, tenant_id, member_ids)
            history = self._contact_history(conn, tenant_id, member_ids, run_date)

        assessments, score_errors = self._score_members(members, visits, touches, run_date)
        generated = self.generator.generate(tenant_id, assessments, open_keys, history)
        batch_errors = score_errors + generated.errors

        try:
            with self.engine.begin() as conn:
                now = self.clock()
                created = 0
                for candidate in generated.candidates:
                    created += self._insert_candidate(conn, tenant_id, run_date, candidate, now)
                details = self._with_errors(error_details, batch_errors)
                self._advance(
                    conn, tenant_id, run_date, token, member_ids[-1],
                    len(members), created, len(batch_errors), details, now,
                )
            error_details[:] = details
        except LeaseLostError:
            raise
        except SQLAlchemyError as e:
            logger.warning(
                f"[{tenant_id}] Batch ending at {member_ids[-1]} failed ({e}); "
                "retrying member by member"
            )
            self._process_individually(
                tenant_id, run_date, token, members, generated.candidates,
                batch_errors, error_details,
            )

    def _process_individually(
        self,
        tenant_id: str,
        run_date: date,
        token: str,
        members: list[repo.MemberRecord],
        candidates: list[InterventionCandidate],
        batch_errors: list[MemberError],
        error_details: list[str],
    ) -> None:
        by_member: dict[str, list[InterventionCandidate]] = {}
        for candidate in candidates:
            by_member.setdefault(candidate.member_id, []).append(candidate)

        outcome = BatchOutcome(errors=list(batch_errors))
        for member in members:
            pending = by_member.get(member.id)
            if not pending:
                continue
            try:
                with self.engine.begin() as conn:
                    now = self.clock()
                    for candidate in pending:
                        outcome.created += self._insert_candidate(
                            conn, tenant_id, run_date, candidate, now
                        )
            except IntegrityError:
                logger.info(f"[{tenant_id}] Member {member.id} already has open work; skipped")
            except SQLAlchemyError as e:
                logger.error(f"[{tenant_id}] Failed to persist member {member.id}: {e}")
                outcome.errors.append(MemberError(member.id, "datastore error"))

        details = self._with_errors(error_details, outcome.errors)
        now = self.clock()
        with self.engine.begin() as conn:
            self._advance(
                conn, tenant_id, run_date, token, members[-1].id,
                len(members), outcome.created, len(outcome.errors), details, now,
            )
        error_details[:] = details

    def _advance(
        self,
        conn,
        tenant_id: str,
        run_date: date,
        token: str,
        cursor: str,
        processed: int,
        created: int,
        errors: int,
        error_details: list[str],
        now: datetime,
    ) -> None:
        advanced = repo.advance_daily_run(
            conn, tenant_id, run_date, token, cursor, processed, created, errors,
            error_details, self._lease_expiry(now), now,
        )
        if not advanced:
            raise LeaseLostError(f"Lease lost while advancing {tenant_id}/{run_date}")

    def _insert_candidate(
        self,
        conn,
        tenant_id: str,
        run_date: date,
        candidate: InterventionCandidate,
        now: datetime,
    ) -> int:
        record = candidate.to_record(tenant_id, run_date, now)
        if not repo.insert_intervention_if_no_open(conn, record):
            return 0
        repo.insert_message_event(
            conn, tenant_id, record.id, "QUEUED",
            {"reason": record.reason, "channel": record.channel}, now,
        )
        return 1

    def _contact_history(
        self, conn, tenant_id: str, member_ids: list[str], run_date: date
    ) -> ContactHistory:
        week_start = datetime.combine(
            run_date - timedelta(days=WEEK_DAYS), datetime.min.time(), tzinfo=timezone.utc
        )
        return ContactHistory(
            recent_keys=repo.recent_intervention_keys(
                conn, tenant_id, member_ids,
                run_date - timedelta(days=self.config.cooldown_days),
            ),
            weekly_sends=repo.send_counts_since(conn, tenant_id, member_ids, week_start),
        )

    def _with_errors(self, error_details: list[str], errors: list[MemberError]) -> list[str]:
        room = max(0, self.config.max_error_details - len(error_details))
        return error_details + [str(e) for e in errors[:room]]

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _score_members(
        self,
        members: list[repo.MemberRecord],
        visits: dict[str, list[date]],
        touches: dict[str, datetime],
        run_date: date,
    ) -> tuple[list[MemberAssessment], list[MemberError]]:
        recent_cutoff = run_date - timedelta(days=self.config.scoring.recent_window_days)

        def score_one(
            member: repo.MemberRecord,
        ) -> tuple[repo.MemberRecord, CommitmentScore | None, int, str | None]:
            try:
                member_visits = visits.get(member.id, [])
                history = EngagementHistory(
                    visit_dates=member_visits,
                    joined_date=member.joined_date,
                    expected_visits_per_week=member.expected_visits_per_week,
                    last_coach_touch=touches.get(member.id),
                )
                recent = sum(1 for d in set(member_visits) if recent_cutoff <= d <= run_date)
                return member, self.scorer.score(history, run_date), recent, None
            except Exception as e:
                return member, None, 0, str(e) or type(e).__name__

        workers = self.config.scoring_workers
        if workers > 1 and len(members) > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(score_one, members))
        else:
            results = [score_one(m) for m in members]

        assessments: list[MemberAssessment] = []
        errors: list[MemberError] = []
        for member, score, recent, error in results:
            if error is not None:
                logger.warning(f"Scoring failed for member {member.id}: {error}")
                errors.append(MemberError(member.id, f"scoring failed: {error}"))
            else:
                assessments.append(MemberAssessment(member, score, recent))
        return assessments, errors

    def _summary(self, tenant_id: str, run_date: date, outcome: str) -> RunSummary:
        with self.engine.connect() as conn:
            record = repo.get_daily_run(conn, tenant_id, run_date)
        return RunSummary.from_record(record, outcome)


# =============================================================================
# Entry points
# =============================================================================


def run_daily_for_tenant(
    engine: Engine,
    tenant_id: str,
    as_of_date: date | None = None,
    config: EngineConfig | None = None,
) -> RunSummary:
    """Run the daily pass for one tenant."""
    return DailyRunCoordinator(engine, config).run(tenant_id, as_of_date)


def run_daily_for_all_tenants(
    engine: Engine,
    as_of_date: date | None = None,
    config: EngineConfig | None = None,
) -> list[RunSummary]:
    """Run the daily pass for every tenant; one tenant's failure never stops the rest."""
    coordinator = DailyRunCoordinator(engine, config)
    run_date = as_of_date or coordinator.clock().date()

    with engine.connect() as conn:
        tenant_ids = repo.list_tenant_ids(conn)

    summaries: list[RunSummary] = []
    for tenant_id in tenant_ids:
        try:
            summaries.append(coordinator.run(tenant_id, run_date))
        except Exception as e:
            logger.exception(f"[{tenant_id}] Daily run failed")
            summaries.append(
                RunSummary(
                    tenant_id=tenant_id,
                    run_date=run_date,
                    outcome=FAILED,
                    errors=1,
                    error_details=[str(e)],
                )
            )

    logger.info(
        f"Daily run for {run_date}: {len(summaries)} tenants, "
        f"{sum(1 for s in summaries if s.outcome == FAILED)} failed"
    )
    return summaries
