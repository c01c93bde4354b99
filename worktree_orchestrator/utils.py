"""Cleanup utilities for orphaned worktrees and stale queue entries."""

import json
import os
import time
from typing import List

from worktree_orchestrator.errors import GitCommandError
from worktree_orchestrator.git_helper import GitHelper
from worktree_orchestrator.models import QueueItemStatus

# queue entries in these states are never picked up again
_FINISHED_STATUSES = (QueueItemStatus.FAILED.value,
                      QueueItemStatus.CONFLICT.value)


def cleanup_orphaned_worktrees(repo_path: str,
                               debug: bool = False) -> List[str]:
    """Drop worktrees whose directory has disappeared; returns their
    paths."""
    print("Cleaning up worktrees...")
    git = GitHelper(repo_path, debug=debug)
    try:
        toplevel = git.show_toplevel()
        worktrees = git.list_worktrees()
    except GitCommandError as exc:
        print(f"Error listing worktrees in {repo_path}: {exc.stderr.strip()}")
        return []

    removed = []
    for wt in worktrees:
        path = wt['path']
        if not os.path.exists(path) and path != toplevel:
            print(f"Removing orphaned worktree: {path}")
            removed.append(path)
    if removed:
        git.prune_worktrees()
    return removed


def cleanup_stale_queue_items(queue_dir: str, days_old: int = 7) -> List[str]:
    """Delete integrated, failed or conflicted queue files older than
    *days_old* days. Items still waiting for integration are kept."""
    queue_dir = os.path.expanduser(queue_dir)
    if not os.path.exists(queue_dir):
        return []

    cutoff_time = time.time() - (days_old * 24 * 60 * 60)
    removed = []
    for fname in sorted(os.listdir(queue_dir)):
        if not fname.endswith('.json'):
            continue
        path = os.path.join(queue_dir, fname)
        if os.path.getmtime(path) >= cutoff_time:
            continue
        try:
            with open(path, 'r') as f:
                item = json.load(f)['item']
        except (OSError, ValueError, KeyError, TypeError) as e:
            print(f"Error reading queue entry {fname}: {e}")
            continue
        if (item.get('integrated_commit')
                or item.get('status') in _FINISHED_STATUSES):
            os.remove(path)
            removed.append(fname[:-len('.json')])
            print(f"Cleaned up stale queue entry: {fname}")
    return removed
