"""
Commitment score engine.

Rule-based scoring (no ML). A member's commitment score (0-100) is derived
from their visit history as of a reference date:

- 0-20:   high churn risk (habit not formed)
- 21-60:  medium risk (habit forming, needs reinforcement)
- 61-79:  low risk (habit established)
- 80-100: no risk (strong habit)

Every factor only rises when visits are added and only falls as days pass
without a visit, and the time-decay multiplier shrinks with the current gap.
So a longer gap never yields a higher score and extra engagement never
lowers it.

Everything in this module is pure: no I/O, no clock reads.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Sequence

from .config import ScoringConfig

logger = logging.getLogger("retain.scoring")


class RiskFlag(str, Enum):
    """Named risk conditions derived from engagement and coach data."""

    NEVER_ENGAGED = "never_engaged"
    OVERDUE_TOUCH = "overdue_touch"
    NO_RECENT_VISITS = "no_recent_visits"
    LARGE_GAP = "large_gap"
    RAPID_DECLINE = "rapid_decline"
    DECLINING_FREQUENCY = "declining_frequency"
    INCONSISTENT_PATTERN = "inconsistent_pattern"
    NEW_MEMBER_LOW_ATTENDANCE = "new_member_low_attendance"
    AT_RISK = "at_risk"


@dataclass
class EngagementHistory:
    """Everything the scorer needs to know about one member."""

    visit_dates: Sequence[date] = field(default_factory=list)
    joined_date: date | None = None
    expected_visits_per_week: float | None = None
    last_coach_touch: datetime | date | None = None


@dataclass
class CommitmentScore:
    """Result of scoring one member as of a date."""

    score: int
    flags: frozenset[RiskFlag]
    habit_decay_velocity: float          # visits/week, negative = declining
    days_since_last_visit: int | None
    days_since_last_touch: int | None
    factor_scores: dict[str, float] = field(default_factory=dict)

    @property
    def risk_level(self) -> str:
        if self.score >= 80:
            return "none"
        if self.score >= 61:
            return "low"
        if self.score >= 21:
            return "medium"
        return "high"

    def has(self, flag: RiskFlag) -> bool:
        return flag in self.flags

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "risk_level": self.risk_level,
            "flags": sorted(f.value for f in self.flags),
            "habit_decay_velocity": self.habit_decay_velocity,
            "days_since_last_visit": self.days_since_last_visit,
            "days_since_last_touch": self.days_since_last_touch,
            "factor_scores": dict(self.factor_scores),
        }


def time_decay_multiplier(
    days_since_last_visit: int | None, decay_per_day: float = 0.018
) -> float:
    """Multiplier in [0, 1]: 1 for 0-1 days, then linear decay per day."""
    if days_since_last_visit is None or days_since_last_visit <= 1:
        return 1.0
    multiplier = max(0.0, 1.0 - (days_since_last_visit - 1) * decay_per_day)
    return round(multiplier, 2)


def _as_date(value: datetime | date) -> date:
    return value.date() if isinstance(value, datetime) else value


class RiskScorer:
    """
    Computes commitment scores and risk flags.

    Instances hold only configuration, so a single scorer can be shared
    across threads.

    Example:
        >>> scorer = RiskScorer(ScoringConfig())
        >>> result = scorer.score(EngagementHistory(visit_dates=[...]), date(2026, 1, 31))
        >>> result.score, sorted(result.flags)
    """

    def __init__(self, config: ScoringConfig | None = None):
        self.config = config or ScoringConfig()

    def score(self, history: EngagementHistory, as_of: date) -> CommitmentScore:
        cfg = self.config
        visits = sorted({d for d in history.visit_dates if d <= as_of}, reverse=True)

        days_since_joined = (
            (as_of - history.joined_date).days if history.joined_date else None
        )
        last_touch = visits[0] if visits else None
        if history.last_coach_touch is not None:
            coach_touch = _as_date(history.last_coach_touch)
            if coach_touch <= as_of and (last_touch is None or coach_touch > last_touch):
                last_touch = coach_touch
        days_since_touch = (as_of - last_touch).days if last_touch else None

        if not visits:
            flags = {RiskFlag.NEVER_ENGAGED, RiskFlag.AT_RISK}
            if days_since_touch is not None and days_since_touch > cfg.overdue_touch_days:
                flags.add(RiskFlag.OVERDUE_TOUCH)
            if days_since_joined is not None and days_since_joined < cfg.new_member_days:
                flags.add(RiskFlag.NEW_MEMBER_LOW_ATTENDANCE)
            return CommitmentScore(
                score=0,
                flags=frozenset(flags),
                habit_decay_velocity=0.0,
                days_since_last_visit=None,
                days_since_last_touch=days_since_touch,
                factor_scores={
                    "frequency": 0.0,
                    "consistency": 0.0,
                    "recency": 0.0,
                    "momentum": 0.0,
                },
            )

        ages = [(as_of - d).days for d in visits]
        days_since_last = ages[0]

        def count_between(lo: int, hi: int) -> int:
            return sum(1 for age in ages if lo <= age <= hi)

        expected = history.expected_visits_per_week
        if not expected or expected <= 0:
            expected = cfg.default_expected_visits_per_week
        expected_per_day = expected / 7

        recent = count_between(0, cfg.recent_window_days)
        previous = count_between(cfg.recent_window_days + 1, cfg.recent_window_days * 2)
        momentum_visits = count_between(0, cfg.momentum_window_days)

        frequency = min(100.0, recent / (expected_per_day * cfg.recent_window_days) * 100)
        momentum = min(
            100.0, momentum_visits / (expected_per_day * cfg.momentum_window_days) * 100
        )
        # Calendar-anchored weeks so buckets never re-split as as_of advances
        active_weeks = {
            d.toordinal() // 7
            for d, age in zip(visits, ages)
            if age < cfg.consistency_weeks * 7
        }
        consistency = min(100.0, len(active_weeks) / cfg.consistency_weeks * 100)
        recency = max(
            0.0, 100 - cfg.recency_points_per_day * max(0, days_since_last - 1)
        )

        raw = (
            frequency * cfg.frequency_weight
            + consistency * cfg.consistency_weight
            + recency * cfg.recency_weight
            + momentum * cfg.momentum_weight
        )
        decay = time_decay_multiplier(days_since_last, cfg.decay_per_day)
        score = max(0, min(100, round(raw * decay)))

        # Per-week change between the last two 30-day windows
        velocity = round((recent - previous) / 4.3, 1)

        gaps = [ages[i + 1] - ages[i] for i in range(len(ages) - 1)]
        max_gap = max(gaps) if gaps else 0
        gap_variance = 0.0
        if len(gaps) > 1:
            mean_gap = sum(gaps) / len(gaps)
            gap_variance = sum((g - mean_gap) ** 2 for g in gaps) / len(gaps)

        flags: set[RiskFlag] = set()
        if days_since_touch is not None and days_since_touch > cfg.overdue_touch_days:
            flags.add(RiskFlag.OVERDUE_TOUCH)
        if days_since_last > cfg.no_recent_visit_days:
            flags.add(RiskFlag.NO_RECENT_VISITS)
        if max_gap > cfg.large_gap_days or days_since_last > cfg.large_gap_days:
            flags.add(RiskFlag.LARGE_GAP)
        if previous > 0 and recent < previous * cfg.rapid_decline_ratio:
            flags.add(RiskFlag.RAPID_DECLINE)
        if velocity < cfg.declining_velocity:
            flags.add(RiskFlag.DECLINING_FREQUENCY)
        if gap_variance > cfg.inconsistent_gap_variance:
            flags.add(RiskFlag.INCONSISTENT_PATTERN)
        if (
            days_since_joined is not None
            and days_since_joined < cfg.new_member_days
            and recent < cfg.new_member_min_visits
        ):
            flags.add(RiskFlag.NEW_MEMBER_LOW_ATTENDANCE)
        if score < cfg.at_risk_cutoff:
            flags.add(RiskFlag.AT_RISK)

        return CommitmentScore(
            score=score,
            flags=frozenset(flags),
            habit_decay_velocity=velocity,
            days_since_last_visit=days_since_last,
            days_since_last_touch=days_since_touch,
            factor_scores={
                "frequency": round(frequency, 1),
                "consistency": round(consistency, 1),
                "recency": round(recency, 1),
                "momentum": round(momentum, 1),
                "time_decay": decay,
            },
        )
