"""Result records returned by workspace, queue and execution operations.

Precondition failures are reported through these rather than raised.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from worktree_orchestrator.models.enums import ResolutionMethod


@dataclass
class WorkspaceResult:
    success: bool
    path: Optional[str] = None
    branch: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MergeResult:
    success: bool
    had_conflicts: bool = False
    commit_hash: Optional[str] = None
    conflict_files: List[str] = field(default_factory=list)
    resolution: str = ResolutionMethod.NONE.value
    error: Optional[str] = None


@dataclass
class ConflictResolutionResult:
    resolved: bool
    method: str
    resolved_files: List[str] = field(default_factory=list)
    remaining_conflicts: List[str] = field(default_factory=list)
    resolution_commit: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    workstream_id: str
    success: bool
    commit_hash: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    files_modified: List[str] = field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0
    output: str = ""


@dataclass
class DiffStats:
    files: int = 0
    insertions: int = 0
    deletions: int = 0


@dataclass
class ProgressSnapshot:
    phase: str
    total_workstreams: int
    completed: int
    failed: int
    in_progress: int
    pending: int
    message: str
    percent_complete: int
    current_workstream: Optional[str] = None
