"""Workstream spec generation and dependency graph construction.

Turns a planner's response into validated :class:`WorkstreamSpec` records,
builds the dependency graph (cycle detection + topological order) and
computes the ready set used by the scheduler.
"""

import json
import os
import re
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from worktree_orchestrator.errors import (
    CircularDependencyError, SpecFormatError, SpecParseError,
    UnknownDependencyError,
)
from worktree_orchestrator.models import (
    Complexity, DependencyGraph, WorkstreamSpec,
)

SPEC_GENERATOR_SYSTEM_PROMPT = """\
You are an expert software architect and task decomposition specialist.

Your role is to analyze complex development tasks and break them into
parallel, independent workstreams that can be executed simultaneously by
different agents.

RULES:
1. Identify natural boundaries for parallelization (separate features,
   independent components)
2. Define clear dependencies between workstreams
3. Provide specific acceptance criteria for each workstream
4. Estimate complexity (low/medium/high) for resource allocation
5. List relevant context files that agents should read
6. Maximum 10 workstreams per task

OUTPUT FORMAT:
Return ONLY a JSON array of workstream specifications:

[
  {
    "id": "unique-workstream-id",
    "name": "Human-readable name",
    "description": "Detailed description of what to implement",
    "dependencies": ["ids-of-prerequisites"],
    "acceptance_criteria": ["Specific, testable criteria"],
    "estimated_complexity": "low|medium|high",
    "context_files": ["paths/to/relevant/files"],
    "timeout_minutes": 60,
    "recommended_agent": "build|coder|frontend|architect"
  }
]

Dependencies must form a DAG (no circular dependencies)."""

SPEC_GENERATION_PROMPT_TEMPLATE = """\
Analyze the following task and break it into parallel workstreams.

USER REQUEST: {user_request}

{context}

Generate workstream specifications that can be executed in parallel where
possible. Consider:
- Which parts are truly independent?
- What are the natural integration points?
- Which workstreams should be done first to unblock others?

Return ONLY the JSON array. No markdown, no explanations."""

REPAIR_PROMPT_TEMPLATE = """\
The following text was supposed to be a JSON array of workstream
specifications but it could not be parsed ({error}). Fix it and return
ONLY the corrected JSON array, nothing else:

{raw}"""

DEFAULT_TIMEOUT_MINUTES = 60
DEFAULT_AGENT = 'coder'

_FENCED_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)```')
_ARRAY_RE = re.compile(r'(\[[\s\S]*\])')
# usable as a git branch suffix and as a queue file name
_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

Planner = Callable[[str], str]


# -- parsing ------------------------------------------------------------------

def _extract_json(response: str) -> str:
    match = _FENCED_RE.search(response) or _ARRAY_RE.search(response)
    return match.group(1) if match else response.strip()


def validate_workstream_id(spec_id: str):
    if (not _ID_RE.match(spec_id) or '..' in spec_id
            or spec_id.endswith('.lock') or spec_id.endswith('.')):
        raise SpecParseError(
            f"Invalid workstream id '{spec_id}': use letters, digits, "
            f"'.', '_' and '-'")


def normalize_spec(raw: Dict, index: int) -> WorkstreamSpec:
    """Validate one raw record and fill in defaults.

    *index* is the zero-based position of the record, used to derive a
    fallback id and name.
    """
    if not isinstance(raw, dict):
        raise SpecParseError(
            f"Workstream #{index + 1}: expected an object, got "
            f"{type(raw).__name__}")

    spec_id = raw.get('id')
    spec_id = f"workstream-{index + 1}" if spec_id in (None, '') \
        else str(spec_id)
    validate_workstream_id(spec_id)
    if not raw.get('description'):
        raise SpecParseError(f"Workstream {spec_id}: description is required")

    complexity = raw.get('estimated_complexity') or Complexity.MEDIUM.value
    if complexity not in {c.value for c in Complexity}:
        raise SpecParseError(
            f"Workstream {spec_id}: invalid estimated_complexity "
            f"'{complexity}'")

    return WorkstreamSpec(
        id=spec_id,
        name=raw.get('name') or f"Workstream {index + 1}",
        description=raw['description'],
        dependencies=[str(d) for d in raw.get('dependencies') or []],
        acceptance_criteria=list(raw.get('acceptance_criteria') or []),
        estimated_complexity=complexity,
        context_files=list(raw.get('context_files') or []),
        timeout_minutes=int(raw.get('timeout_minutes')
                            or DEFAULT_TIMEOUT_MINUTES),
        recommended_agent=raw.get('recommended_agent') or DEFAULT_AGENT,
    )


def parse_specs(response: str) -> List[WorkstreamSpec]:
    """Parse workstream specs out of a planner response.

    The JSON array may be wrapped in a fenced code block or embedded in
    surrounding prose. Raises :class:`SpecParseError` rather than dropping
    any record.
    """
    try:
        data = json.loads(_extract_json(response))
    except json.JSONDecodeError as exc:
        raise SpecFormatError(
            f"Failed to parse workstream specs: {exc}") from exc

    if not isinstance(data, list):
        raise SpecFormatError(
            "Failed to parse workstream specs: expected a JSON array")

    specs = [normalize_spec(item, i) for i, item in enumerate(data)]

    seen: Set[str] = set()
    for spec in specs:
        if spec.id in seen:
            raise SpecParseError(f"Duplicate workstream id: {spec.id}")
        seen.add(spec.id)
    return specs


# -- graph --------------------------------------------------------------------

def build_graph(specs: Iterable[WorkstreamSpec]) -> DependencyGraph:
    """Build the dependency graph for *specs*.

    Raises :class:`UnknownDependencyError` for a dependency outside the
    set and :class:`CircularDependencyError` for a cycle. Ids are checked
    as in :func:`normalize_spec` (:class:`SpecParseError`).
    """
    specs = list(specs)
    for spec in specs:
        validate_workstream_id(spec.id)
    all_ids = [s.id for s in specs]
    id_set = set(all_ids)

    dependencies: Dict[str, Set[str]] = {s.id: set(s.dependencies)
                                         for s in specs}
    dependents: Dict[str, Set[str]] = {s.id: set() for s in specs}

    for spec in specs:
        for dep in spec.dependencies:
            if dep not in id_set:
                raise UnknownDependencyError(spec.id, dep)
            dependents[dep].add(spec.id)

    # depth-first cycle detection; iterative so deep chains are fine
    visited: Set[str] = set()
    on_stack: Set[str] = set()
    for start in all_ids:
        if start in visited:
            continue
        visited.add(start)
        on_stack.add(start)
        stack = [(start, iter(sorted(dependencies[start])))]
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if child in on_stack:
                    raise CircularDependencyError(child)
                if child not in visited:
                    visited.add(child)
                    on_stack.add(child)
                    stack.append((child, iter(sorted(dependencies[child]))))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node)
                stack.pop()

    # Kahn's algorithm
    in_degree = {i: len(dependencies[i]) for i in all_ids}
    queue = [i for i in all_ids if in_degree[i] == 0]
    order: List[str] = []
    while queue:
        current = queue.pop(0)
        order.append(current)
        for dependent in sorted(dependents[current]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(all_ids):
        stuck = next(i for i in all_ids if i not in set(order))
        raise CircularDependencyError(stuck)

    return DependencyGraph(
        dependencies=dependencies,
        dependents=dependents,
        roots=[s.id for s in specs if not s.dependencies],
        topological_order=order,
    )


def ready_workstreams(specs: Iterable[WorkstreamSpec],
                      completed: Iterable[str]) -> List[str]:
    """Ids of specs not yet completed whose dependencies all are."""
    done = set(completed)
    return [
        s.id for s in specs
        if s.id not in done and all(d in done for d in s.dependencies)
    ]


# -- generator ----------------------------------------------------------------

class SpecGenerator:
    """Generates workstream specs from a request via a planning
    collaborator and persists them per session."""

    def __init__(self, planner: Optional[Planner] = None,
                 project_root: Optional[str] = None,
                 state_dirname: str = '.orchestrator',
                 debug: bool = False):
        self.planner = planner
        self.project_root = project_root or os.getcwd()
        self.specs_dir = os.path.join(self.project_root, state_dirname,
                                      'specs')
        self.debug = debug

    @property
    def system_prompt(self) -> str:
        return SPEC_GENERATOR_SYSTEM_PROMPT

    @property
    def prompt_template(self) -> str:
        return SPEC_GENERATION_PROMPT_TEMPLATE

    def build_prompt(self, user_request: str,
                     context_files: Optional[List[str]] = None) -> str:
        context = ''
        if context_files:
            context = "CONTEXT FILES:\n" + "\n".join(
                f"- {f}" for f in context_files)
        body = SPEC_GENERATION_PROMPT_TEMPLATE.format(
            user_request=user_request, context=context)
        return f"{SPEC_GENERATOR_SYSTEM_PROMPT}\n\n{body}"

    def generate_specs(self, user_request: str,
                       context_files: Optional[List[str]] = None
                       ) -> List[WorkstreamSpec]:
        """Ask the planner for specs; one repair round-trip on bad JSON."""
        if self.planner is None:
            raise SpecParseError("No planner configured for spec generation")

        print("[ORCH] Delegating workstream decomposition to planner…")
        raw = self.planner(self.build_prompt(user_request, context_files))
        try:
            return parse_specs(raw)
        except SpecFormatError as exc:
            print(f"[ORCH] Planner output unparseable ({exc}); "
                  f"asking planner to repair it…")
            fixed = self.planner(
                REPAIR_PROMPT_TEMPLATE.format(error=exc, raw=raw))
            return parse_specs(fixed)

    # -- persistence ----------------------------------------------------------

    def _specs_path(self, session_id: str) -> str:
        return os.path.join(self.specs_dir, f"{session_id}.json")

    def save_specs(self, session_id: str, specs: List[WorkstreamSpec]) -> str:
        os.makedirs(self.specs_dir, exist_ok=True)
        path = self._specs_path(session_id)
        data = {
            'session_id': session_id,
            'created_at': datetime.now().isoformat(),
            'workstreams': [asdict(s) for s in specs],
        }
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
        if self.debug:
            print(f"[ORCH] Saved {len(specs)} specs to {path}")
        return path

    def load_specs(self, session_id: str) -> Optional[List[WorkstreamSpec]]:
        path = self._specs_path(session_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return [normalize_spec(item, i)
                    for i, item in enumerate(data['workstreams'])]
        except (OSError, ValueError, KeyError, TypeError,
                SpecParseError) as exc:
            print(f"[ORCH] Warning: ignoring unreadable spec file "
                  f"{path}: {exc}")
            return None
