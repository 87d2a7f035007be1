"""
Configuration for the intervention engine.

Centralizes daily-run batching and time budget, generation limits,
approval sweep timing, and outbound provider settings.
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from src.scoring import ScoringConfig, get_scoring_config

load_dotenv()


@dataclass
class EngineConfig:
    """Configuration for the intervention engine."""

    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    # Daily run
    run_batch_size: int = 100
    run_time_budget_seconds: float = 60.0
    run_lease_seconds: int = 120
    scoring_workers: int = 4
    max_error_details: int = 50

    # Generation
    max_new_per_member: int = 1
    # No repeat of a type to a member within this many days (any status but CANCELLED)
    cooldown_days: int = 3
    # SENT/FAILED interventions allowed per member in a rolling 7 days
    max_per_member_per_week: int = 2

    # Approvals stuck in APPROVED longer than this are failed by the sweep
    stale_approval_minutes: int = 30

    # Outbound providers
    resend_api_key: str = ""
    resend_from_email: str = "noreply@example.com"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    dispatch_timeout_seconds: float = 10.0


def get_engine_config() -> EngineConfig:
    """Load engine config from environment variables."""
    return EngineConfig(
        scoring=get_scoring_config(),
        run_batch_size=int(os.getenv("RUN_BATCH_SIZE", "100")),
        run_time_budget_seconds=float(os.getenv("RUN_TIME_BUDGET_SECONDS", "60")),
        run_lease_seconds=int(os.getenv("RUN_LEASE_SECONDS", "120")),
        scoring_workers=int(os.getenv("SCORING_WORKERS", "4")),
        max_new_per_member=int(os.getenv("MAX_NEW_INTERVENTIONS_PER_MEMBER", "1")),
        cooldown_days=int(os.getenv("INTERVENTION_COOLDOWN_DAYS", "3")),
        max_per_member_per_week=int(os.getenv("MAX_MESSAGES_PER_MEMBER_PER_WEEK", "2")),
        stale_approval_minutes=int(os.getenv("STALE_APPROVAL_MINUTES", "30")),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        resend_from_email=os.getenv("RESEND_FROM_EMAIL", "noreply@example.com"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        dispatch_timeout_seconds=float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "10")),
    )
