"""Data models used by the graph builder, workspace manager, integration
queue and orchestrator."""

from worktree_orchestrator.models.enums import (
    Complexity, QueueItemStatus, SessionPhase, ConflictStrategy,
    ResolutionMethod,
)
from worktree_orchestrator.models.workstream import WorkstreamSpec, DependencyGraph
from worktree_orchestrator.models.queue_item import IntegrationQueueItem, QueueFileEntry
from worktree_orchestrator.models.session_state import SessionConfig, SessionState
from worktree_orchestrator.models.results import (
    WorkspaceResult, MergeResult, ConflictResolutionResult, ExecutionResult,
    DiffStats, ProgressSnapshot,
)

__all__ = [
    "Complexity",
    "QueueItemStatus",
    "SessionPhase",
    "ConflictStrategy",
    "ResolutionMethod",
    "WorkstreamSpec",
    "DependencyGraph",
    "IntegrationQueueItem",
    "QueueFileEntry",
    "SessionConfig",
    "SessionState",
    "WorkspaceResult",
    "MergeResult",
    "ConflictResolutionResult",
    "ExecutionResult",
    "DiffStats",
    "ProgressSnapshot",
]
