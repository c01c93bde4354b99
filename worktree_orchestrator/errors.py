"""Exception hierarchy.

Precondition failures (unknown workstream, existing workspace, empty or
busy queue) are reported through result objects instead; these exceptions
cover the failures that end a session or a call outright.
"""

from typing import List, Optional


class OrchestratorError(Exception):
    """Base class for every error raised by this package."""


class GitCommandError(OrchestratorError):
    """A git subprocess exited non-zero."""

    def __init__(self, cmd: List[str], returncode: int,
                 stdout: str = "", stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"git command failed ({returncode}): {' '.join(cmd)}\n"
            f"stdout: {stdout}\nstderr: {stderr}"
        )


class WorkspaceError(OrchestratorError):
    """The workspace manager cannot operate (e.g. not inside a repo)."""

    def __init__(self, message: str, command: Optional[str] = None,
                 stderr: Optional[str] = None):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class SpecParseError(OrchestratorError):
    """Planner output could not be turned into workstream specs."""


class PlanningError(OrchestratorError):
    """The planning collaborator failed to produce any output."""


class GraphError(OrchestratorError):
    """The workstream dependency relation is invalid."""


class UnknownDependencyError(GraphError):

    def __init__(self, spec_id: str, missing_id: str):
        self.spec_id = spec_id
        self.missing_id = missing_id
        super().__init__(
            f"Workstream {spec_id} has unknown dependency: {missing_id}")


class CircularDependencyError(GraphError):

    def __init__(self, spec_id: str):
        self.spec_id = spec_id
        super().__init__(
            f"Circular dependency detected involving workstream: {spec_id}")


class SessionActiveError(OrchestratorError):
    """start() was called while a session is already running."""


class SessionTimeoutError(OrchestratorError):
    """The execution loop exceeded the session deadline."""


class WorkspaceCreationError(OrchestratorError):
    """A workspace could not be created during session setup."""

    def __init__(self, workstream_id: str, reason: str):
        self.workstream_id = workstream_id
        self.reason = reason
        super().__init__(
            f"Failed to create workspace for {workstream_id}: {reason}")


class SpecFormatError(SpecParseError):
    """Planner output is not a JSON array at all (as opposed to an array
    holding an invalid record)."""
