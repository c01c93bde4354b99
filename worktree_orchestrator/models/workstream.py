"""WorkstreamSpec and DependencyGraph dataclasses."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from worktree_orchestrator.models.enums import Complexity


@dataclass(frozen=True)
class WorkstreamSpec:
    id: str
    name: str
    description: str
    dependencies: List[str] = field(default_factory=list)
    acceptance_criteria: List[str] = field(default_factory=list)
    estimated_complexity: str = Complexity.MEDIUM.value
    context_files: List[str] = field(default_factory=list)
    timeout_minutes: Optional[int] = None
    recommended_agent: Optional[str] = None


@dataclass(frozen=True)
class DependencyGraph:
    """Read-only view over a validated spec set."""
    dependencies: Dict[str, Set[str]]
    dependents: Dict[str, Set[str]]
    roots: List[str]
    topological_order: List[str]

    def transitive_dependents(self, workstream_id: str) -> Set[str]:
        """Every workstream that directly or indirectly depends on
        *workstream_id*."""
        seen: Set[str] = set()
        stack = list(self.dependents.get(workstream_id, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependents.get(current, ()))
        return seen
