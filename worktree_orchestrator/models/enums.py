"""Status, phase and strategy enumerations."""

from enum import Enum


class Complexity(Enum):
    """Estimated complexity of a workstream."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QueueItemStatus(Enum):
    """Status of an item in the integration queue."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"    # workstream done, or integrated once integrated_commit is set
    FAILED = "failed"
    MERGING = "merging"        # dequeued, integration under way
    CONFLICT = "conflict"


class SessionPhase(Enum):
    """Phase of an orchestration session."""
    IDLE = "idle"
    GENERATING_SPECS = "generating_specs"
    CREATING_WORKTREES = "creating_worktrees"
    EXECUTING = "executing"
    MERGING = "merging"
    CLEANUP = "cleanup"


class ConflictStrategy(Enum):
    """How conflicting files are resolved automatically."""
    OURS = "ours"
    THEIRS = "theirs"
    UNION = "union"


class ResolutionMethod(Enum):
    """How a conflict ended up being handled."""
    NONE = "none"
    AUTO = "auto"
    MANUAL = "manual"
    DELEGATED = "delegated"
