"""Exception hierarchy for the intervention engine."""


class InterventionEngineError(Exception):
    """Base class for all engine errors."""


class InvalidTenantError(InterventionEngineError, ValueError):
    """Tenant identifier missing or malformed. Raised before any work starts."""


class PreconditionError(InterventionEngineError):
    """The requested operation is not valid for the record's current state."""


class InterventionNotFoundError(PreconditionError):
    """No intervention with this id exists within the tenant."""

    def __init__(self, intervention_id: str):
        super().__init__(f"Intervention {intervention_id} not found")
        self.intervention_id = intervention_id


class InvalidTransitionError(PreconditionError):
    """A status transition outside the approval state machine was requested."""

    def __init__(self, current: str, target: str, message: str | None = None):
        super().__init__(
            message or f"Cannot move intervention from {current} to {target}"
        )
        self.current = current
        self.target = target


class DispatchError(InterventionEngineError):
    """Outbound delivery failed (provider error or contact guardrail)."""


class LeaseLostError(InterventionEngineError):
    """Another runner took over the daily run record."""
