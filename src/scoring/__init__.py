"""
Commitment scoring for Retain Gym.

Pure, deterministic scoring of member engagement history into a 0-100
commitment score plus named risk flags.
"""

from .commitment import (
    CommitmentScore,
    EngagementHistory,
    RiskFlag,
    RiskScorer,
    time_decay_multiplier,
)
from .config import ScoringConfig, get_scoring_config

__all__ = [
    "CommitmentScore",
    "EngagementHistory",
    "RiskFlag",
    "RiskScorer",
    "ScoringConfig",
    "get_scoring_config",
    "time_decay_multiplier",
]
