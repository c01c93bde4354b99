"""FIFO integration queue for completed workstreams.

Each item is persisted as ``<queue_dir>/<workstream_id>.json``; on startup
the directory is read back in file-name order. Integration cherry-picks the
workstream's commit onto the target branch in the main checkout, with
automatic and delegated conflict resolution.
"""

import json
import os
import tempfile
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from worktree_orchestrator.errors import GitCommandError
from worktree_orchestrator.git_helper import GitHelper
from worktree_orchestrator.models import (
    ConflictResolutionResult, ConflictStrategy, IntegrationQueueItem,
    MergeResult, QueueFileEntry, QueueItemStatus, ResolutionMethod,
)
from worktree_orchestrator.workspace_manager import ensure_queue_directory

ConflictResolver = Callable[[str, List[str]], ConflictResolutionResult]

DEQUEUEABLE = (QueueItemStatus.PENDING.value, QueueItemStatus.COMPLETED.value)


class IntegrationQueue:
    """Durable FIFO queue of workstream commits awaiting integration."""

    def __init__(self, queue_path: str, repo_root: str,
                 target_branch: Optional[str] = None,
                 conflict_strategy: str = ConflictStrategy.THEIRS.value,
                 conflict_resolution_agent: str = 'architect',
                 conflict_resolver: Optional[ConflictResolver] = None,
                 git: Optional[GitHelper] = None, debug: bool = False):
        self.queue_path = os.path.expanduser(queue_path)
        self.repo_root = repo_root
        self.target_branch = target_branch
        self.conflict_strategy = conflict_strategy
        self.conflict_resolution_agent = conflict_resolution_agent
        self.conflict_resolver = conflict_resolver
        self.git = git or GitHelper(repo_root, debug=debug)
        self.debug = debug
        self._queue: List[IntegrationQueueItem] = []
        self._versions: Dict[str, int] = {}
        self._processing = False
        ensure_queue_directory(self.queue_path)
        self._load_queue()

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[ORCH-QUEUE] {msg}")

    # -- persistence ----------------------------------------------------------

    def _item_path(self, workstream_id: str) -> str:
        return os.path.join(self.queue_path, f"{workstream_id}.json")

    def _load_queue(self):
        for fname in sorted(os.listdir(self.queue_path)):
            if not fname.endswith('.json'):
                continue
            path = os.path.join(self.queue_path, fname)
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
                item = IntegrationQueueItem.from_dict(data['item'])
                version = int(data.get('version', 1))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                print(f"[ORCH-QUEUE] Warning: skipping invalid queue entry "
                      f"{fname}: {exc}")
                continue
            if item.status == QueueItemStatus.MERGING.value:
                # interrupted mid-integration by a previous process
                item.status = QueueItemStatus.PENDING.value
            self._queue.append(item)
            self._versions[item.workstream_id] = version
        self._dbg(f"Loaded {len(self._queue)} items from {self.queue_path}")

    def _save_item(self, item: IntegrationQueueItem):
        version = self._versions.get(item.workstream_id, 0) + 1
        self._versions[item.workstream_id] = version
        entry = QueueFileEntry(item=item, version=version,
                               updated_at=datetime.now().isoformat())
        with open(self._item_path(item.workstream_id), 'w') as f:
            json.dump(asdict(entry), f, indent=2)

    def _delete_item_file(self, workstream_id: str):
        path = self._item_path(workstream_id)
        if os.path.exists(path):
            os.remove(path)
        self._versions.pop(workstream_id, None)

    # -- queue operations -----------------------------------------------------

    def enqueue(self, workstream_id: str, workspace_name: str,
                status: str = QueueItemStatus.PENDING.value,
                commit_hash: Optional[str] = None) -> IntegrationQueueItem:
        """Append an item; an earlier item for the same workstream is
        replaced."""
        existing = self.get_item(workstream_id)
        if existing is not None:
            self._queue.remove(existing)

        item = IntegrationQueueItem(
            id=f"queue-{uuid.uuid4().hex[:12]}",
            workstream_id=workstream_id,
            workspace_name=workspace_name,
            status=status,
            commit_hash=commit_hash,
        )
        self._queue.append(item)
        self._save_item(item)
        self._dbg(f"Enqueued {workstream_id} ({status})")
        return item

    def _is_dequeueable(self, item: IntegrationQueueItem) -> bool:
        return item.status in DEQUEUEABLE and item.integrated_commit is None

    def dequeue(self) -> Optional[IntegrationQueueItem]:
        """Take the oldest pending/completed item and mark it ``merging``."""
        item = self.peek()
        if item is None:
            return None
        item.status = QueueItemStatus.MERGING.value
        self._save_item(item)
        return item

    def peek(self) -> Optional[IntegrationQueueItem]:
        return next((i for i in self._queue if self._is_dequeueable(i)), None)

    def all_items(self) -> List[IntegrationQueueItem]:
        return list(self._queue)

    def items_by_status(self, status: str) -> List[IntegrationQueueItem]:
        return [i for i in self._queue if i.status == status]

    def get_item(self, workstream_id: str) -> Optional[IntegrationQueueItem]:
        return next((i for i in self._queue
                     if i.workstream_id == workstream_id), None)

    def update_item(self, workstream_id: str, **updates):
        item = self.get_item(workstream_id)
        if item is None:
            return
        for k, v in updates.items():
            setattr(item, k, v)
        self._save_item(item)

    def mark_completed(self, workstream_id: str, commit_hash: str):
        self.update_item(workstream_id,
                         status=QueueItemStatus.COMPLETED.value,
                         commit_hash=commit_hash,
                         completed_at=datetime.now().isoformat())

    def mark_integrated(self, workstream_id: str, integrated_commit: str,
                        resolution: Optional[str] = None):
        self.update_item(workstream_id,
                         status=QueueItemStatus.COMPLETED.value,
                         integrated_commit=integrated_commit,
                         resolution_strategy=resolution,
                         conflict_files=[],
                         error_message=None,
                         completed_at=datetime.now().isoformat())

    def mark_failed(self, workstream_id: str, error_message: str):
        self.update_item(workstream_id,
                         status=QueueItemStatus.FAILED.value,
                         error_message=error_message)

    def mark_conflict(self, workstream_id: str, conflict_files: List[str],
                      error_message: Optional[str] = None):
        self.update_item(workstream_id,
                         status=QueueItemStatus.CONFLICT.value,
                         conflict_files=list(conflict_files),
                         error_message=error_message)

    def remove_item(self, workstream_id: str):
        item = self.get_item(workstream_id)
        if item is not None:
            self._queue.remove(item)
            self._delete_item_file(workstream_id)

    def clear(self):
        for fname in os.listdir(self.queue_path):
            if fname.endswith('.json'):
                os.remove(os.path.join(self.queue_path, fname))
        self._queue = []
        self._versions = {}

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_empty(self) -> bool:
        return not self._queue

    @property
    def is_processing(self) -> bool:
        return self._processing

    def get_stats(self) -> Dict[str, int]:
        stats = {'total': len(self._queue)}
        for status in QueueItemStatus:
            stats[status.value] = len(self.items_by_status(status.value))
        return stats

    # -- git integration ------------------------------------------------------

    def cherry_pick(self, workstream_id: str, commit_hash: str,
                    target_branch: Optional[str] = None,
                    keep_conflicts: bool = False) -> MergeResult:
        """Apply *commit_hash* on top of the target branch.

        On conflicts the cherry-pick is aborted (leaving a clean tree) unless
        *keep_conflicts* is set, in which case the conflicted state is left
        for :meth:`resolve_conflicts_auto`.
        """
        try:
            branch = (target_branch or self.target_branch
                      or self.git.get_current_branch())
            self.git.checkout(branch)
        except GitCommandError as exc:
            return MergeResult(success=False,
                               error=f"Checkout failed: {exc.stderr.strip()}")

        self._dbg(f"Cherry-picking {commit_hash[:10]} ({workstream_id}) "
                  f"onto {branch}")
        r = self.git.cherry_pick(commit_hash)
        if r.returncode == 0:
            return MergeResult(success=True,
                               commit_hash=self.git.rev_parse('HEAD'))

        conflicts = self.git.conflict_files()
        if conflicts:
            if not keep_conflicts:
                self.git.abort_cherry_pick()
            return MergeResult(
                success=False, had_conflicts=True, conflict_files=conflicts,
                error=f"Merge conflicts in files: {', '.join(conflicts)}")

        # e.g. an empty pick leaves the operation open
        if self.git.operation_in_progress():
            self.git.abort_in_progress()
        return MergeResult(
            success=False,
            error=(r.stderr or r.stdout).strip() or 'Cherry-pick failed')

    def conflict_files(self) -> List[str]:
        return self.git.conflict_files()

    def has_conflicts(self) -> bool:
        return self.git.diff_check()

    def _union_merge(self, path: str):
        with tempfile.TemporaryDirectory() as tmp:
            staged = {}
            for stage, label in ((1, 'base'), (2, 'ours'), (3, 'theirs')):
                staged[label] = os.path.join(tmp, label)
                with open(staged[label], 'w') as f:
                    f.write(self.git.show_stage(stage, path))
            merged = self.git.merge_file_union(
                staged['ours'], staged['base'], staged['theirs'])
        with open(os.path.join(self.repo_root, path), 'w') as f:
            f.write(merged)

    def resolve_conflicts_auto(self, strategy: Optional[str] = None
                               ) -> ConflictResolutionResult:
        """Resolve every conflicted file with *strategy* and commit.

        Any failure aborts the in-progress operation and reports the files
        that were still conflicted.
        """
        strategy = ConflictStrategy(strategy or self.conflict_strategy)
        conflicts = self.git.conflict_files()
        if not conflicts:
            return ConflictResolutionResult(
                resolved=True, method=ResolutionMethod.AUTO.value)

        try:
            for path in conflicts:
                if strategy == ConflictStrategy.UNION:
                    self._union_merge(path)
                else:
                    self.git.checkout_side(strategy.value, path)
                self.git.add(path)
            self.git.commit_no_edit(allow_empty=True)
            commit = self.git.rev_parse('HEAD')
        except (GitCommandError, OSError) as exc:
            self.git.abort_in_progress()
            return ConflictResolutionResult(
                resolved=False, method=ResolutionMethod.AUTO.value,
                remaining_conflicts=conflicts,
                error=getattr(exc, 'stderr', '') or str(exc))

        print(f"[ORCH-QUEUE] Auto-resolved {len(conflicts)} conflicted "
              f"file(s) using '{strategy.value}'")
        return ConflictResolutionResult(
            resolved=True, method=ResolutionMethod.AUTO.value,
            resolved_files=conflicts, resolution_commit=commit)

    def delegate_conflict_resolution(self, workstream_id: str,
                                     conflict_files: List[str]
                                     ) -> ConflictResolutionResult:
        """Hand unresolved conflicts to the configured resolver.

        Without a resolver, or until it reports back, the result stays
        unresolved with method ``delegated``.
        """
        delegated = ResolutionMethod.DELEGATED.value
        if self.conflict_resolver is None:
            print(f"[ORCH-QUEUE] Conflicts in {workstream_id} delegated to "
                  f"'{self.conflict_resolution_agent}'; awaiting resolution")
            return ConflictResolutionResult(
                resolved=False, method=delegated,
                remaining_conflicts=list(conflict_files),
                error=f"Awaiting resolution by "
                      f"{self.conflict_resolution_agent}")
        try:
            result = self.conflict_resolver(workstream_id,
                                            list(conflict_files))
        except Exception as exc:
            print(f"[ORCH-QUEUE] Warning: conflict resolver failed for "
                  f"{workstream_id}: {exc}")
            return ConflictResolutionResult(
                resolved=False, method=delegated,
                remaining_conflicts=list(conflict_files), error=str(exc))
        result.method = delegated
        return result

    # -- processing -----------------------------------------------------------

    def process_next(self, auto_resolve: bool = True
                     ) -> Tuple[Optional[IntegrationQueueItem], MergeResult]:
        """Integrate the next item. Single-flight: a concurrent call gets an
        error result instead of waiting."""
        if self._processing:
            return None, MergeResult(success=False,
                                     error='Queue is already being processed')
        self._processing = True
        try:
            item = self.dequeue()
            if item is None:
                return None, MergeResult(success=False,
                                         error='Queue is empty')
            return item, self._integrate(item, auto_resolve)
        finally:
            self._processing = False

    def _integrate(self, item: IntegrationQueueItem,
                   auto_resolve: bool) -> MergeResult:
        ws_id = item.workstream_id
        item.merge_attempts += 1

        if not item.commit_hash:
            self.mark_failed(ws_id, 'No commit hash provided')
            return MergeResult(success=False,
                               error='No commit hash provided')

        result = self.cherry_pick(ws_id, item.commit_hash,
                                  keep_conflicts=auto_resolve)
        if result.success:
            self.mark_integrated(ws_id, result.commit_hash)
            return result
        if not result.had_conflicts:
            self.mark_failed(ws_id, result.error or 'Unknown error')
            return result

        if auto_resolve:
            resolution = self.resolve_conflicts_auto()
            if resolution.resolved:
                self.mark_integrated(ws_id, resolution.resolution_commit,
                                     ResolutionMethod.AUTO.value)
                return MergeResult(
                    success=True, had_conflicts=True,
                    commit_hash=resolution.resolution_commit,
                    conflict_files=result.conflict_files,
                    resolution=ResolutionMethod.AUTO.value)
            if self.git.operation_in_progress():
                self.git.abort_in_progress()

        delegated = self.delegate_conflict_resolution(ws_id,
                                                      result.conflict_files)
        if delegated.resolved:
            self.mark_integrated(ws_id, delegated.resolution_commit,
                                 ResolutionMethod.DELEGATED.value)
            return MergeResult(
                success=True, had_conflicts=True,
                commit_hash=delegated.resolution_commit,
                conflict_files=result.conflict_files,
                resolution=ResolutionMethod.DELEGATED.value)

        self.mark_conflict(ws_id, result.conflict_files, delegated.error)
        return MergeResult(
            success=False, had_conflicts=True,
            conflict_files=result.conflict_files,
            resolution=ResolutionMethod.DELEGATED.value,
            error=result.error)

    def process_all(self, auto_resolve: bool = True
                    ) -> List[Tuple[IntegrationQueueItem, MergeResult]]:
        """Drain the queue, stopping at the first unresolved conflict."""
        results = []
        while self.peek() is not None:
            item, result = self.process_next(auto_resolve)
            if item is None:
                break
            results.append((item, result))
            if not result.success and result.had_conflicts:
                print(f"[ORCH-QUEUE] Stopping: unresolved conflict in "
                      f"{item.workstream_id}")
                break
        return results
