"""
Intervention generation from risk flags.

Pure Python, no datastore access: the coordinator supplies scored members,
the set of open (member, type) pairs and the recent contact history used by
the cooldown and weekly cap, and persists what comes back.
Rule evaluation is deterministic, so the same inputs always produce the
same candidates in the same order.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from src.data.repository import InterventionRecord, MemberRecord, new_id
from src.scoring import CommitmentScore, RiskFlag

from .config import EngineConfig
from .status import InterventionStatus
from .templates import build_context, render_message

logger = logging.getLogger("retain.interventions.generator")


class InterventionType(str, Enum):
    ONBOARDING_NUDGE = "ONBOARDING_NUDGE"
    WIN_BACK = "WIN_BACK"
    COACH_CHECK_IN = "COACH_CHECK_IN"
    HABIT_REINFORCEMENT = "HABIT_REINFORCEMENT"


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


# Evaluated in order; the first matching rules win when a member is capped
RULES: list[tuple[RiskFlag, InterventionType]] = [
    (RiskFlag.NEVER_ENGAGED, InterventionType.ONBOARDING_NUDGE),
    (RiskFlag.NO_RECENT_VISITS, InterventionType.WIN_BACK),
    (RiskFlag.LARGE_GAP, InterventionType.WIN_BACK),
    (RiskFlag.OVERDUE_TOUCH, InterventionType.COACH_CHECK_IN),
    (RiskFlag.RAPID_DECLINE, InterventionType.HABIT_REINFORCEMENT),
    (RiskFlag.DECLINING_FREQUENCY, InterventionType.HABIT_REINFORCEMENT),
    (RiskFlag.INCONSISTENT_PATTERN, InterventionType.HABIT_REINFORCEMENT),
    (RiskFlag.AT_RISK, InterventionType.COACH_CHECK_IN),
    (RiskFlag.NEW_MEMBER_LOW_ATTENDANCE, InterventionType.ONBOARDING_NUDGE),
]


@dataclass
class MemberAssessment:
    """A member together with their score for the run date."""

    member: MemberRecord
    score: CommitmentScore
    recent_visits: int = 0


@dataclass
class InterventionCandidate:
    member_id: str
    intervention_type: InterventionType
    channel: Channel
    reason: str
    subject: str | None
    body: str

    def to_record(self, tenant_id: str, run_date: date, now: datetime) -> InterventionRecord:
        return InterventionRecord(
            id=new_id(),
            tenant_id=tenant_id,
            member_id=self.member_id,
            intervention_type=self.intervention_type.value,
            channel=self.channel.value,
            status=InterventionStatus.PENDING_APPROVAL.value,
            reason=self.reason,
            rendered_subject=self.subject,
            rendered_body=self.body,
            run_date=run_date,
            created_at=now,
            updated_at=now,
        )


@dataclass
class MemberError:
    member_id: str
    message: str

    def __str__(self) -> str:
        return f"{self.member_id}: {self.message}"


@dataclass
class ContactHistory:
    """Recent outreach for a batch of members.

    Attributes:
        recent_keys: (member_id, type) pairs generated within the cooldown
            window in any status except CANCELLED.
        weekly_sends: SENT/FAILED count per member over the last 7 days.
    """

    recent_keys: set[tuple[str, str]] = field(default_factory=set)
    weekly_sends: dict[str, int] = field(default_factory=dict)


@dataclass
class GenerationResult:
    candidates: list[InterventionCandidate] = field(default_factory=list)
    errors: list[MemberError] = field(default_factory=list)
    skipped_duplicates: int = 0
    skipped_cooldown: int = 0
    skipped_capped: int = 0


def choose_channel(member: MemberRecord) -> Channel:
    """Email when reachable by email, else SMS when reachable by SMS, else email."""
    if member.email and member.consent_email:
        return Channel.EMAIL
    if member.phone and member.consent_sms:
        return Channel.SMS
    return Channel.EMAIL


def matching_types(score: CommitmentScore) -> list[tuple[InterventionType, list[RiskFlag]]]:
    """Intervention types triggered by a score, in rule order, with their flags."""
    matched: dict[InterventionType, list[RiskFlag]] = {}
    for flag, itype in RULES:
        if score.has(flag):
            matched.setdefault(itype, []).append(flag)
    return list(matched.items())


class InterventionGenerator:
    """
    Turns scored members into PENDING_APPROVAL intervention candidates.

    Additive only: it never changes existing interventions. A type is
    skipped when the member already has open work of that type or was sent
    it within the cooldown, and a member is skipped entirely once the
    weekly send cap is reached.

    Example:
        >>> generator = InterventionGenerator(EngineConfig())
        >>> result = generator.generate("gym-1", assessments, open_keys=set())
        >>> [c.intervention_type for c in result.candidates]
    """

    def __init__(self, config: EngineConfig | None = None, gym_name: str = "your gym"):
        self.config = config or EngineConfig()
        self.gym_name = gym_name

    def generate(
        self,
        tenant_id: str,
        assessments: list[MemberAssessment],
        open_keys: set[tuple[str, str]],
        history: ContactHistory | None = None,
    ) -> GenerationResult:
        history = history or ContactHistory()
        result = GenerationResult()
        for assessment in assessments:
            member_id = assessment.member.id
            if history.weekly_sends.get(member_id, 0) >= self.config.max_per_member_per_week:
                result.skipped_capped += 1
                continue
            try:
                candidates = self._generate_for_member(
                    assessment, open_keys, history.recent_keys, result
                )
            except Exception as e:
                logger.warning(f"[{tenant_id}] Generation failed for member {member_id}: {e}")
                result.errors.append(MemberError(member_id, str(e)))
                continue
            result.candidates.extend(candidates)

        logger.debug(
            f"[{tenant_id}] Generated {len(result.candidates)} candidates "
            f"from {len(assessments)} members "
            f"({result.skipped_duplicates} skipped as open, "
            f"{result.skipped_cooldown} in cooldown, {result.skipped_capped} capped, "
            f"{len(result.errors)} errors)"
        )
        return result

    def _generate_for_member(
        self,
        assessment: MemberAssessment,
        open_keys: set[tuple[str, str]],
        recent_keys: set[tuple[str, str]],
        result: GenerationResult,
    ) -> list[InterventionCandidate]:
        member = assessment.member
        score = assessment.score
        candidates: list[InterventionCandidate] = []

        for itype, flags in matching_types(score):
            key = (member.id, itype.value)
            if key in open_keys:
                result.skipped_duplicates += 1
                continue
            if key in recent_keys:
                result.skipped_cooldown += 1
                continue
            if len(candidates) >= self.config.max_new_per_member:
                break

            channel = choose_channel(member)
            context = build_context(
                first_name=member.first_name,
                gym_name=self.gym_name,
                days_since_last_visit=score.days_since_last_visit,
                recent_visits=assessment.recent_visits,
                score=score.score,
            )
            message = render_message(itype.value, channel.value, context)
            candidates.append(
                InterventionCandidate(
                    member_id=member.id,
                    intervention_type=itype,
                    channel=channel,
                    reason=",".join(f.value for f in flags),
                    subject=message.subject,
                    body=message.body,
                )
            )

        return candidates
