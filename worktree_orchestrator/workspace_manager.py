"""Git worktree manager: one isolated, branch-backed workspace per
workstream.

Workspaces are named ``<prefix>-<index>`` and live on branches named
``<prefix>/<workstream_id>``, both derived deterministically so a later
process can recover tracking from the repository alone.
"""

import os
import re
from typing import Dict, List, Optional

from worktree_orchestrator.errors import GitCommandError, WorkspaceError
from worktree_orchestrator.git_helper import GitHelper
from worktree_orchestrator.models import DiffStats, WorkspaceResult

_SHORTSTAT_RE = re.compile(
    r'(\d+) files? changed'
    r'(?:, (\d+) insertions?\(\+\))?'
    r'(?:, (\d+) deletions?\(-\))?')


def default_queue_directory() -> str:
    return os.path.join(os.path.expanduser('~'), '.orchestrator-queue')


def ensure_queue_directory(queue_path: str):
    os.makedirs(queue_path, exist_ok=True)


class WorkspaceManager:
    """Creates, tracks and removes workstream worktrees."""

    def __init__(self, prefix: str = 'orch', repo_root: Optional[str] = None,
                 worktree_base_path: Optional[str] = None,
                 git: Optional[GitHelper] = None, debug: bool = False):
        self.prefix = prefix
        self.debug = debug
        self.git = git or GitHelper(repo_root or os.getcwd(), debug=debug)
        try:
            self.repo_root = self.git.show_toplevel()
        except (GitCommandError, OSError) as exc:
            raise WorkspaceError(
                'Failed to find git repository root. Are you in a git '
                'repository?', 'git rev-parse --show-toplevel',
                getattr(exc, 'stderr', None)) from exc
        self.git.repo_path = self.repo_root
        self.worktree_base_path = (worktree_base_path
                                   or os.path.dirname(self.repo_root))
        try:
            self.original_branch = self.git.get_current_branch()
        except GitCommandError as exc:
            raise WorkspaceError('Failed to get current branch',
                                 'git branch --show-current',
                                 exc.stderr) from exc
        # workstream id -> worktree path
        self._workspaces: Dict[str, str] = {}

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[ORCH-WS] {msg}")

    # -- naming ---------------------------------------------------------------

    def workspace_name(self, index: int) -> str:
        return f"{self.prefix}-{index}"

    def branch_name(self, workstream_id: str) -> str:
        return f"{self.prefix}/{workstream_id}"

    def get_repo_root(self) -> str:
        return self.repo_root

    def get_original_branch(self) -> str:
        return self.original_branch

    # -- lifecycle ------------------------------------------------------------

    def _worktree_exists(self, name: str) -> bool:
        if any(os.path.basename(p) == name for p in self._workspaces.values()):
            return True
        return any(os.path.basename(wt['path']) == name
                   for wt in self.list_all_worktrees())

    def create_workspace(self, workstream_id: str,
                         index: int) -> WorkspaceResult:
        """Create branch ``<prefix>/<id>`` off the original branch and a
        worktree ``<prefix>-<index>`` bound to it.

        On failure the freshly created branch is deleted again.
        """
        name = self.workspace_name(index)
        branch = self.branch_name(workstream_id)
        wt_path = os.path.join(self.worktree_base_path, name)

        if workstream_id in self._workspaces or self._worktree_exists(name):
            return WorkspaceResult(success=False,
                                   error=f"Worktree {name} already exists")
        if self.git.branch_exists(branch):
            return WorkspaceResult(success=False,
                                   error=f"Branch {branch} already exists")

        branch_created = False
        try:
            self.git.create_branch(branch, self.original_branch)
            branch_created = True
            os.makedirs(self.worktree_base_path, exist_ok=True)
            self.git.add_worktree(wt_path, branch)
        except (GitCommandError, OSError) as exc:
            if branch_created:
                self.git.delete_branch(branch)
            reason = exc.stderr.strip() if isinstance(
                exc, GitCommandError) else str(exc)
            print(f"[ORCH-WS] Failed to create worktree {name}: {reason}")
            return WorkspaceResult(
                success=False, error=f"Failed to create worktree: {reason}")

        self._workspaces[workstream_id] = wt_path
        self._dbg(f"Created {wt_path} on {branch}")
        return WorkspaceResult(success=True, path=wt_path, branch=branch)

    def remove_workspace(self, workstream_id: str,
                         force: bool = False) -> bool:
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return False

        try:
            self.git.remove_worktree(wt_path, force=force)
        except GitCommandError as exc:
            print(f"[ORCH-WS] Failed to remove worktree {wt_path}: "
                  f"{exc.stderr.strip()}")
            return False

        # the branch may already be gone
        if not self.git.delete_branch(self.branch_name(workstream_id)):
            self._dbg(f"Branch {self.branch_name(workstream_id)} "
                      f"was not deleted")

        del self._workspaces[workstream_id]
        self._dbg(f"Removed {wt_path}")
        return True

    def cleanup_all(self, force: bool = False) -> Dict[str, bool]:
        return {ws_id: self.remove_workspace(ws_id, force)
                for ws_id in list(self._workspaces)}

    # -- tracking -------------------------------------------------------------

    def get_workspace_path(self, workstream_id: str) -> Optional[str]:
        return self._workspaces.get(workstream_id)

    def all_workspaces(self) -> Dict[str, str]:
        return dict(self._workspaces)

    # -- work inside a workspace ----------------------------------------------

    def commit_changes(self, workstream_id: str,
                       message: str) -> Optional[str]:
        """Stage everything and commit; returns the new commit hash, or None
        for an unknown workstream or a failed commit (e.g. nothing to
        commit)."""
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return None
        try:
            self.git.commit_all(message, cwd=wt_path)
            return self.git.rev_parse('HEAD', cwd=wt_path)
        except GitCommandError as exc:
            self._dbg(f"Commit in {wt_path} failed: "
                      f"{(exc.stdout + exc.stderr).strip()}")
            return None

    def commits_ahead(self, workstream_id: str) -> int:
        """Commits on the workstream branch not on the original branch."""
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return 0
        try:
            return self.git.count_commits(self.original_branch, 'HEAD',
                                          cwd=wt_path)
        except GitCommandError:
            return 0

    def squash_commits(self, workstream_id: str,
                       message: str) -> Optional[str]:
        """Fold every commit the workstream made (plus anything left
        uncommitted) into a single commit on top of the fork point, so one
        cherry-pick carries the whole workstream."""
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return None
        try:
            base = self.git.merge_base(self.original_branch, 'HEAD',
                                       cwd=wt_path)
            self.git.reset_soft(base, cwd=wt_path)
        except GitCommandError as exc:
            print(f"[ORCH-WS] Squash in {wt_path} failed: "
                  f"{exc.stderr.strip()}")
            return None
        return self.commit_changes(workstream_id, message)

    def head_commit(self, workstream_id: str) -> Optional[str]:
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return None
        try:
            return self.git.rev_parse('HEAD', cwd=wt_path)
        except GitCommandError:
            return None

    def has_uncommitted_changes(self, workstream_id: str) -> bool:
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return False
        try:
            return bool(self.git.status_porcelain(cwd=wt_path).strip())
        except GitCommandError:
            return False

    def get_diff_stats(self, workstream_id: str) -> Optional[DiffStats]:
        wt_path = self._workspaces.get(workstream_id)
        if not wt_path:
            return None
        try:
            output = self.git.diff_shortstat('HEAD', cwd=wt_path)
        except GitCommandError:
            return None
        match = _SHORTSTAT_RE.search(output)
        if not match:
            return DiffStats()
        return DiffStats(files=int(match.group(1)),
                         insertions=int(match.group(2) or 0),
                         deletions=int(match.group(3) or 0))

    # -- repository-wide ------------------------------------------------------

    def list_all_worktrees(self) -> List[Dict[str, str]]:
        try:
            return self.git.list_worktrees()
        except GitCommandError:
            return []

    def prune(self) -> bool:
        try:
            self.git.prune_worktrees()
            return True
        except GitCommandError:
            return False

    # -- persistence ----------------------------------------------------------

    def get_state(self) -> Dict:
        return {
            'original_branch': self.original_branch,
            'worktrees': list(self._workspaces.values()),
        }

    def restore_state(self, state: Dict):
        """Rebuild tracking from exported state.

        The workstream id comes from the ``<prefix>/<id>`` branch git reports
        for each path; paths git no longer knows fall back to the directory
        suffix.
        """
        self.original_branch = state.get('original_branch') or \
            self.original_branch
        self._workspaces.clear()

        branch_prefix = f"{self.prefix}/"
        by_path = {os.path.realpath(wt['path']): wt.get('branch', '')
                   for wt in self.list_all_worktrees()}
        suffix_re = re.compile(rf'^{re.escape(self.prefix)}-(.+)$')

        for wt_path in state.get('worktrees', []):
            branch = by_path.get(os.path.realpath(wt_path), '')
            if branch.startswith(branch_prefix):
                self._workspaces[branch[len(branch_prefix):]] = wt_path
                continue
            match = suffix_re.match(os.path.basename(wt_path))
            if match:
                self._workspaces[match.group(1)] = wt_path
        self._dbg(f"Restored {len(self._workspaces)} workspaces")
