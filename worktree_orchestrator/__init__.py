"""Worktree Orchestrator: parallel coding workstreams in isolated git
worktrees, integrated back through a durable cherry-pick queue."""

from worktree_orchestrator.config import (
    GIT_REPO_PATH, STATE_DIRNAME, QUEUE_DIRECTORY, AGENT_COMMAND,
    default_session_config,
)
from worktree_orchestrator.errors import (
    OrchestratorError, GitCommandError, WorkspaceError, SpecParseError,
    SpecFormatError, PlanningError, GraphError, UnknownDependencyError,
    CircularDependencyError, SessionActiveError, SessionTimeoutError,
    WorkspaceCreationError,
)
from worktree_orchestrator.models import (
    Complexity, QueueItemStatus, SessionPhase, ConflictStrategy,
    ResolutionMethod, WorkstreamSpec, DependencyGraph, IntegrationQueueItem,
    SessionConfig, SessionState, WorkspaceResult, MergeResult,
    ConflictResolutionResult, ExecutionResult, ProgressSnapshot,
)
from worktree_orchestrator.git_helper import GitHelper, is_git_repository
from worktree_orchestrator.spec_generator import (
    SpecGenerator, parse_specs, build_graph, ready_workstreams,
)
from worktree_orchestrator.workspace_manager import WorkspaceManager
from worktree_orchestrator.integration_queue import IntegrationQueue
from worktree_orchestrator.events import EventStream, EventType, ProgressEvent
from worktree_orchestrator.agent import AgentExecutor, AgentPlanner, run_agent
from worktree_orchestrator.orchestrator import (
    Orchestrator, create_orchestrator, is_orchestration_available,
)
from worktree_orchestrator.utils import (
    cleanup_orphaned_worktrees, cleanup_stale_queue_items,
)
from worktree_orchestrator.cli import main
