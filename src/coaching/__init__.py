"""Coach assignment and follow-up tracking."""

from .tracker import (
    CoachAssignmentTracker,
    CoachNotFoundError,
    DuplicateTouchError,
    MemberNotFoundError,
    OverdueAssignment,
)

__all__ = [
    "CoachAssignmentTracker",
    "CoachNotFoundError",
    "DuplicateTouchError",
    "MemberNotFoundError",
    "OverdueAssignment",
]
