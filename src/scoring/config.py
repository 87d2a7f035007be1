"""
Commitment scoring configuration.

Weights and thresholds for the rule-based commitment score. Defaults follow
the product's published scoring bands; override for experimentation.
"""

import os
from dataclasses import dataclass


@dataclass
class ScoringConfig:
    """Configuration for commitment scoring and risk flag thresholds."""

    # Factor weights (sum to 1.0)
    frequency_weight: float = 0.35
    consistency_weight: float = 0.25
    recency_weight: float = 0.25
    momentum_weight: float = 0.15

    # Assumed visits/week when the member has no membership expectation
    default_expected_visits_per_week: float = 2.0

    # Time decay: multiplier drops by this much per day after day 1
    decay_per_day: float = 0.018
    recency_points_per_day: float = 4.0

    # Windows (days)
    recent_window_days: int = 30
    momentum_window_days: int = 14
    consistency_weeks: int = 8

    # Risk flag thresholds
    overdue_touch_days: int = 10
    no_recent_visit_days: int = 14
    large_gap_days: int = 21
    rapid_decline_ratio: float = 0.5
    declining_velocity: float = -0.5
    inconsistent_gap_variance: float = 50.0
    new_member_days: int = 30
    new_member_min_visits: int = 2
    at_risk_cutoff: int = 30

    def __post_init__(self) -> None:
        total = (
            self.frequency_weight
            + self.consistency_weight
            + self.recency_weight
            + self.momentum_weight
        )
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.3f}")


def get_scoring_config() -> ScoringConfig:
    """Load scoring thresholds that operators commonly tune from the environment."""
    return ScoringConfig(
        overdue_touch_days=int(os.getenv("OVERDUE_TOUCH_DAYS", "10")),
        at_risk_cutoff=int(os.getenv("AT_RISK_CUTOFF", "30")),
        default_expected_visits_per_week=float(
            os.getenv("DEFAULT_EXPECTED_VISITS_PER_WEEK", "2.0")
        ),
    )
