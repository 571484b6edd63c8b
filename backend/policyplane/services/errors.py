"""Error types raised by snapshot, promotion, validation and deployment services."""

from __future__ import annotations

# purpose: give every pipeline failure a distinct, catchable kind
# status: pilot


class PolicyPlaneError(RuntimeError):
    """Base error for policy snapshot and rollout flows."""


class ValidationPrecondition(PolicyPlaneError):
    """Raised when a step is invoked on the wrong artifact format."""


class InvalidState(PolicyPlaneError):
    """Raised when operating on an unsaved or absent entity."""


class SnapshotNotFound(InvalidState):
    """Raised when a referenced snapshot does not exist."""


class PercentDecreaseBlocked(InvalidState):
    """Raised when a lane percent would drop without the rollback flag."""


class UnknownRuleReference(InvalidState):
    """Raised in strict mode when a change targets a rule that is not in the base set."""


class ProposalGenerationFailed(PolicyPlaneError):
    """Raised when the proposal producer returns nothing."""


class CompilationFailed(PolicyPlaneError):
    """Raised when the rule compiler call fails."""


class PersistenceFailed(PolicyPlaneError):
    """Raised when a database write fails or returns an unusable row."""


class SnapshotVersionConflict(PersistenceFailed):
    """Raised when a snapshot version is already taken."""


class LaneConflict(PolicyPlaneError):
    """Raised when concurrent writers race on the same deployment lane."""


class ValidationRunNotFound(InvalidState):
    """Raised when a referenced validation run does not exist."""


class DuplicateRuleName(InvalidState):
    """Raised in strict mode when a change would give two rules the same name."""
