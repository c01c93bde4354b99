"""Git operations helper (worktree / branch / cherry-pick plumbing).

Every git invocation in the package goes through :class:`GitHelper`; a
non-zero exit code raises :class:`GitCommandError` unless the caller asks
for ``check=False`` and inspects the result itself.
"""

import os
import subprocess
from typing import Dict, List, Optional

from worktree_orchestrator.errors import GitCommandError


def is_git_repository(path: str) -> bool:
    """Return True if *path* is inside a git work tree."""
    try:
        result = subprocess.run(['git', 'rev-parse', '--git-dir'], cwd=path,
                                capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


class GitHelper:
    """Thin wrapper around the git executable bound to one repository."""

    def __init__(self, repo_path: str, debug: bool = False,
                 timeout: int = 120):
        self.repo_path = repo_path
        self.debug = debug
        self.timeout = timeout

    def _run(self, cmd: List[str], cwd: Optional[str] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        cwd = cwd or self.repo_path
        if self.debug:
            print(f"[ORCH-GIT] {' '.join(cmd)}  (cwd={cwd})")
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True,
                                timeout=self.timeout)
        if check and result.returncode != 0:
            raise GitCommandError(cmd, result.returncode,
                                  result.stdout, result.stderr)
        return result

    # -- repository -----------------------------------------------------------

    def show_toplevel(self) -> str:
        r = self._run(['git', 'rev-parse', '--show-toplevel'])
        return r.stdout.strip()

    def get_current_branch(self, cwd: Optional[str] = None) -> str:
        r = self._run(['git', 'branch', '--show-current'], cwd=cwd)
        return r.stdout.strip()

    def rev_parse(self, ref: str = 'HEAD', cwd: Optional[str] = None) -> str:
        r = self._run(['git', 'rev-parse', ref], cwd=cwd)
        return r.stdout.strip()

    def checkout(self, ref: str, cwd: Optional[str] = None):
        self._run(['git', 'checkout', ref], cwd=cwd)

    def merge_base(self, a: str, b: str = 'HEAD',
                   cwd: Optional[str] = None) -> str:
        return self._run(['git', 'merge-base', a, b], cwd=cwd).stdout.strip()

    def reset_soft(self, ref: str, cwd: Optional[str] = None):
        self._run(['git', 'reset', '--soft', ref], cwd=cwd)

    def count_commits(self, base: str, head: str = 'HEAD',
                      cwd: Optional[str] = None) -> int:
        r = self._run(['git', 'rev-list', '--count', f'{base}..{head}'],
                      cwd=cwd)
        return int(r.stdout.strip() or 0)

    # -- branches -------------------------------------------------------------

    def create_branch(self, branch_name: str, start_point: str = "HEAD"):
        self._run(['git', 'branch', branch_name, start_point])

    def delete_branch(self, branch_name: str) -> bool:
        r = self._run(['git', 'branch', '-D', branch_name], check=False)
        return r.returncode == 0

    def branch_exists(self, branch_name: str) -> bool:
        r = self._run(['git', 'rev-parse', '--verify', '--quiet',
                       f'refs/heads/{branch_name}'], check=False)
        return r.returncode == 0

    # -- worktrees ------------------------------------------------------------

    def add_worktree(self, wt_path: str, branch_name: str):
        self._run(['git', 'worktree', 'add', wt_path, branch_name])

    def remove_worktree(self, wt_path: str, force: bool = False):
        cmd = ['git', 'worktree', 'remove', wt_path]
        if force:
            cmd.append('--force')
        self._run(cmd)

    def prune_worktrees(self):
        self._run(['git', 'worktree', 'prune'])

    def list_worktrees(self) -> List[Dict[str, str]]:
        """Parse ``git worktree list --porcelain`` into dicts with ``path``,
        ``commit`` and (when attached) ``branch`` keys."""
        r = self._run(['git', 'worktree', 'list', '--porcelain'])
        worktrees = []
        for entry in r.stdout.strip().split('\n\n'):
            wt: Dict[str, str] = {}
            for line in entry.split('\n'):
                if line.startswith('worktree '):
                    wt['path'] = line[len('worktree '):]
                elif line.startswith('HEAD '):
                    wt['commit'] = line[len('HEAD '):]
                elif line.startswith('branch '):
                    wt['branch'] = line[len('branch '):].replace(
                        'refs/heads/', '', 1)
            if wt.get('path') and wt.get('commit'):
                worktrees.append(wt)
        return worktrees

    # -- working tree ---------------------------------------------------------

    def add(self, path: str = '-A', cwd: Optional[str] = None):
        if path == '-A':
            self._run(['git', 'add', '-A'], cwd=cwd)
        else:
            self._run(['git', 'add', '--', path], cwd=cwd)

    def commit(self, message: str, cwd: Optional[str] = None):
        self._run(['git', 'commit', '-m', message], cwd=cwd)

    def commit_all(self, message: str, cwd: Optional[str] = None):
        self.add('-A', cwd=cwd)
        self.commit(message, cwd=cwd)

    def commit_no_edit(self, allow_empty: bool = False,
                       cwd: Optional[str] = None):
        cmd = ['git', 'commit', '--no-edit']
        if allow_empty:
            cmd.append('--allow-empty')
        self._run(cmd, cwd=cwd)

    def status_porcelain(self, cwd: Optional[str] = None) -> str:
        return self._run(['git', 'status', '--porcelain'], cwd=cwd).stdout

    def diff_shortstat(self, ref: str = 'HEAD',
                      cwd: Optional[str] = None) -> str:
        return self._run(['git', 'diff', '--shortstat', ref],
                         cwd=cwd).stdout

    def diff_check(self, cwd: Optional[str] = None) -> bool:
        """Return True when ``git diff --check`` reports problems such as
        leftover conflict markers."""
        return self._run(['git', 'diff', '--check'], cwd=cwd,
                         check=False).returncode != 0

    # -- integration ----------------------------------------------------------

    def cherry_pick(self, commit_hash: str,
                    cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        return self._run(['git', 'cherry-pick', commit_hash], cwd=cwd,
                         check=False)

    def conflict_files(self, cwd: Optional[str] = None) -> List[str]:
        r = self._run(['git', 'diff', '--name-only', '--diff-filter=U'],
                      cwd=cwd, check=False)
        return [f for f in r.stdout.strip().split('\n') if f]

    def has_conflicts(self, cwd: Optional[str] = None) -> bool:
        return bool(self.conflict_files(cwd=cwd))

    def checkout_side(self, side: str, path: str, cwd: Optional[str] = None):
        """Take the ``ours`` or ``theirs`` version of a conflicted file."""
        self._run(['git', 'checkout', f'--{side}', '--', path], cwd=cwd)

    def show_stage(self, stage: int, path: str,
                   cwd: Optional[str] = None) -> str:
        return self._run(['git', 'show', f':{stage}:{path}'], cwd=cwd).stdout

    def merge_file_union(self, current: str, base: str, other: str,
                         cwd: Optional[str] = None) -> str:
        """Run ``git merge-file --union`` and return the merged content."""
        r = self._run(['git', 'merge-file', '-p', '--union',
                       current, base, other], cwd=cwd, check=False)
        # merge-file exits with the number of conflicts; --union leaves none
        if r.returncode < 0:
            raise GitCommandError(r.args, r.returncode, r.stdout, r.stderr)
        return r.stdout

    def operation_in_progress(self, cwd: Optional[str] = None) -> Optional[str]:
        """Return ``'cherry-pick'``, ``'merge'`` or None."""
        r = self._run(['git', 'rev-parse', '--git-dir'], cwd=cwd)
        git_dir = r.stdout.strip()
        if not os.path.isabs(git_dir):
            git_dir = os.path.join(cwd or self.repo_path, git_dir)
        if os.path.exists(os.path.join(git_dir, 'CHERRY_PICK_HEAD')):
            return 'cherry-pick'
        if os.path.exists(os.path.join(git_dir, 'MERGE_HEAD')):
            return 'merge'
        return None

    def abort_cherry_pick(self, cwd: Optional[str] = None) -> bool:
        r = self._run(['git', 'cherry-pick', '--abort'], cwd=cwd, check=False)
        return r.returncode == 0

    def abort_merge(self, cwd: Optional[str] = None) -> bool:
        r = self._run(['git', 'merge', '--abort'], cwd=cwd, check=False)
        return r.returncode == 0

    def abort_in_progress(self, cwd: Optional[str] = None) -> bool:
        """Abort whichever cherry-pick or merge is in progress."""
        operation = self.operation_in_progress(cwd=cwd)
        if operation == 'cherry-pick':
            return self.abort_cherry_pick(cwd=cwd)
        if operation == 'merge':
            return self.abort_merge(cwd=cwd)
        return False
