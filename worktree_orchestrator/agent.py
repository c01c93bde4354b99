"""Agent CLI collaborators.

:class:`AgentPlanner` turns a decomposition prompt into raw planner text and
:class:`AgentExecutor` performs one workstream inside its worktree. Both
shell out to a coding-agent CLI (``claude -p`` by default).
"""

import subprocess
import time
from typing import Any, Dict, List, Optional

from worktree_orchestrator.config import AGENT_COMMAND
from worktree_orchestrator.errors import PlanningError
from worktree_orchestrator.models import ExecutionResult, WorkstreamSpec


def run_agent(cwd: str, prompt: str, timeout_seconds: int = 900,
              command: Optional[List[str]] = None) -> Dict[str, Any]:
    """Run the agent CLI inside *cwd* with *prompt* as its last argument.

    Returns a dict with ``success``, ``output``, and ``error`` keys.
    """
    cmd = list(command or AGENT_COMMAND) + [prompt]
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return {'success': False, 'output': '',
                'error': f'Agent timed out after {timeout_seconds}s'}
    except OSError as exc:
        return {'success': False, 'output': '', 'error': str(exc)}

    output = result.stdout
    if result.stderr.strip():
        output += f"\n---STDERR---\n{result.stderr}"
    error = None
    if result.returncode != 0:
        error = f"Agent exited with status {result.returncode}"
    return {'success': result.returncode == 0, 'output': output,
            'error': error}


class AgentPlanner:
    """Planning collaborator backed by the agent CLI."""

    def __init__(self, repo_root: str, timeout_seconds: int = 300,
                 command: Optional[List[str]] = None):
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds
        self.command = command

    def __call__(self, prompt: str) -> str:
        result = run_agent(self.repo_root, prompt, self.timeout_seconds,
                           self.command)
        if not result['success']:
            raise PlanningError(
                f"Decomposition agent failed: {result.get('error', '?')}")
        return result['output']


def build_workstream_prompt(spec: WorkstreamSpec) -> str:
    criteria = "\n".join(f"- {c}" for c in spec.acceptance_criteria) or \
        "- Implementation matches the description."
    context = ", ".join(spec.context_files) or \
        'Determine from the description.'
    return (
        f"You are one of several coding agents working on a larger task.\n\n"
        f"## Your Workstream: {spec.name}\n\n"
        f"{spec.description}\n\n"
        f"## Acceptance Criteria\n{criteria}\n\n"
        f"## Context Files\n{context}\n\n"
        f"## Instructions\n"
        f"- Only implement what is described above.\n"
        f"- Leave your changes in the working tree; they are committed "
        f"for you.\n"
        f"- Do NOT push to remote.\n"
    )


class AgentExecutor:
    """Executor collaborator: runs the agent CLI in the workspace."""

    def __init__(self, default_timeout_minutes: int = 120,
                 command: Optional[List[str]] = None):
        self.default_timeout_minutes = default_timeout_minutes
        self.command = command

    def __call__(self, spec: WorkstreamSpec,
                 workspace_path: str) -> ExecutionResult:
        started = time.monotonic()
        minutes = spec.timeout_minutes or self.default_timeout_minutes
        result = run_agent(workspace_path, build_workstream_prompt(spec),
                           int(minutes * 60), self.command)
        return ExecutionResult(
            workstream_id=spec.id,
            success=result['success'],
            error=result['error'],
            output=result['output'][:2000],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
