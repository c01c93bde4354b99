"""SessionConfig and SessionState dataclasses."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from worktree_orchestrator.models.enums import ConflictStrategy, SessionPhase
from worktree_orchestrator.models.workstream import WorkstreamSpec


@dataclass
class SessionConfig:
    max_parallel_workstreams: int = 5
    auto_merge: bool = True
    conflict_resolution_agent: str = "architect"
    conflict_strategy: str = ConflictStrategy.THEIRS.value
    worktree_prefix: str = "orch"
    cleanup_worktrees: bool = True
    queue_directory: str = "~/.orchestrator-queue"
    queue_poll_interval: float = 5.0
    worktree_base_path: Optional[str] = None
    session_timeout_minutes: float = 240
    workstream_timeout_minutes: int = 120
    retry_failed_workstreams: bool = False
    max_retries: int = 2

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionConfig':
        return cls(**{
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__
        })


@dataclass
class SessionState:
    session_id: str
    config: SessionConfig
    active: bool = False
    original_branch: str = ""
    phase: str = SessionPhase.IDLE.value
    workstreams: List[WorkstreamSpec] = field(default_factory=list)
    active_workspaces: List[str] = field(default_factory=list)
    queue_path: str = ""
    completed_workstreams: List[str] = field(default_factory=list)
    failed_workstreams: List[str] = field(default_factory=list)
    blocked_workstreams: List[str] = field(default_factory=list)
    started_at: str = ""
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionState':
        values = {
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__
        }
        values['config'] = SessionConfig.from_dict(values.get('config') or {})
        values['workstreams'] = [
            WorkstreamSpec(**{
                k: v for k, v in ws.items()
                if k in WorkstreamSpec.__dataclass_fields__
            })
            for ws in values.get('workstreams') or []
        ]
        return cls(**values)
