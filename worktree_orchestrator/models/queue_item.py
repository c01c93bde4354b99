"""Integration queue records."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from worktree_orchestrator.models.enums import QueueItemStatus


@dataclass
class IntegrationQueueItem:
    id: str
    workstream_id: str
    workspace_name: str
    status: str = QueueItemStatus.PENDING.value
    commit_hash: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    merge_attempts: int = 0
    conflict_files: List[str] = field(default_factory=list)
    resolution_strategy: Optional[str] = None
    integrated_commit: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'IntegrationQueueItem':
        return cls(**{
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__
        })


@dataclass
class QueueFileEntry:
    """On-disk wrapper around a queue item."""
    item: IntegrationQueueItem
    version: int = 1
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())
