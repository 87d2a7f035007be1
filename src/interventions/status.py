"""
Intervention status state machine.

All transition rules live here. Callers never compare status strings
directly; they ask ``require_transition`` and write with a conditional
update on the expected current status.

    PENDING_APPROVAL ──> APPROVED ──> SENT
          │                 │  ^
          v                 v  │ (manual retry)
      CANCELLED           FAILED
"""

from enum import Enum

from .errors import InvalidTransitionError


class InterventionStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SENT = "SENT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ALLOWED_TRANSITIONS: dict[InterventionStatus, frozenset[InterventionStatus]] = {
    InterventionStatus.PENDING_APPROVAL: frozenset({
        InterventionStatus.APPROVED,
        InterventionStatus.CANCELLED,
    }),
    InterventionStatus.APPROVED: frozenset({
        InterventionStatus.SENT,
        InterventionStatus.FAILED,
    }),
    InterventionStatus.FAILED: frozenset({InterventionStatus.APPROVED}),
    InterventionStatus.SENT: frozenset(),
    InterventionStatus.CANCELLED: frozenset(),
}

OPEN_STATUSES = frozenset({
    InterventionStatus.PENDING_APPROVAL,
    InterventionStatus.APPROVED,
})

# FAILED is terminal for delivery purposes; only a manual retry reopens it
TERMINAL_STATUSES = frozenset({
    InterventionStatus.SENT,
    InterventionStatus.CANCELLED,
    InterventionStatus.FAILED,
})


def parse_status(value: str) -> InterventionStatus:
    """Parse a persisted status string, rejecting unknown values."""
    try:
        return InterventionStatus(value)
    except ValueError:
        raise ValueError(f"Unknown intervention status: {value!r}") from None


def can_transition(current: InterventionStatus, target: InterventionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def require_transition(
    current: InterventionStatus | str, target: InterventionStatus | str
) -> None:
    """Raise InvalidTransitionError unless current -> target is an allowed edge."""
    current = parse_status(current) if isinstance(current, str) else current
    target = parse_status(target) if isinstance(target, str) else target
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
