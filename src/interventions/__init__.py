"""
Intervention engine: generation, approval workflow and the daily run.

Usage:
    from src.interventions import DailyRunCoordinator, ApprovalWorkflow

    summary = DailyRunCoordinator(engine).run("gym-1")
    workflow = ApprovalWorkflow(engine, ChannelDispatcher.from_config(config))
    workflow.approve_and_send("gym-1", intervention_id)
"""

from .config import EngineConfig, get_engine_config
from .coordinator import (
    DailyRunCoordinator,
    RunSummary,
    run_daily_for_all_tenants,
    run_daily_for_tenant,
)
from .dispatch import (
    ChannelDispatcher,
    DispatchReceipt,
    EmailDispatcher,
    LoggingDispatcher,
    SmsDispatcher,
)
from .errors import (
    DispatchError,
    InterventionEngineError,
    InterventionNotFoundError,
    InvalidTenantError,
    InvalidTransitionError,
    LeaseLostError,
    PreconditionError,
)
from .generator import (
    Channel,
    ContactHistory,
    GenerationResult,
    InterventionCandidate,
    InterventionGenerator,
    InterventionType,
    MemberAssessment,
    MemberError,
)
from .status import InterventionStatus, require_transition
from .tenancy import validate_tenant_id
from .workflow import ApprovalWorkflow, TransitionResult

__all__ = [
    "ApprovalWorkflow",
    "Channel",
    "ChannelDispatcher",
    "ContactHistory",
    "DailyRunCoordinator",
    "DispatchError",
    "DispatchReceipt",
    "EmailDispatcher",
    "EngineConfig",
    "GenerationResult",
    "InterventionCandidate",
    "InterventionEngineError",
    "InterventionGenerator",
    "InterventionNotFoundError",
    "InterventionStatus",
    "InterventionType",
    "InvalidTenantError",
    "InvalidTransitionError",
    "LeaseLostError",
    "LoggingDispatcher",
    "MemberAssessment",
    "MemberError",
    "PreconditionError",
    "RunSummary",
    "SmsDispatcher",
    "TransitionResult",
    "get_engine_config",
    "require_transition",
    "run_daily_for_all_tenants",
    "run_daily_for_tenant",
    "validate_tenant_id",
]
