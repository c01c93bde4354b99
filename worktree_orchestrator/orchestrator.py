"""Workstream orchestrator.

Decomposes a request into workstreams, gives each one its own git worktree,
runs ready workstreams in parallel (bounded by ``max_parallel_workstreams``)
and integrates their commits back onto the original branch through the
integration queue.
"""

import concurrent.futures
import json
import os
import time
import traceback
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from worktree_orchestrator.agent import AgentExecutor, AgentPlanner
from worktree_orchestrator.config import STATE_DIRNAME, default_session_config
from worktree_orchestrator.errors import (
    GraphError, SessionActiveError, SessionTimeoutError, SpecParseError,
    WorkspaceCreationError,
)
from worktree_orchestrator.events import EventStream, EventType
from worktree_orchestrator.git_helper import is_git_repository
from worktree_orchestrator.integration_queue import (
    ConflictResolver, IntegrationQueue,
)
from worktree_orchestrator.models import (
    DependencyGraph, ExecutionResult, ProgressSnapshot, QueueItemStatus,
    SessionConfig, SessionPhase, SessionState, WorkstreamSpec,
)
from worktree_orchestrator.spec_generator import (
    Planner, SpecGenerator, build_graph, ready_workstreams,
)
from worktree_orchestrator.workspace_manager import WorkspaceManager

Executor = Callable[[WorkstreamSpec, str], ExecutionResult]


def _new_session_id() -> str:
    return f"orch-{uuid.uuid4().hex[:12]}"


class Orchestrator:
    """Drives one session at a time through
    idle -> generating_specs -> creating_worktrees -> executing -> merging
    -> cleanup -> idle."""

    def __init__(self, repo_root: str, workspace_manager: WorkspaceManager,
                 integration_queue: IntegrationQueue,
                 spec_generator: SpecGenerator, executor: Executor,
                 config: Optional[SessionConfig] = None,
                 events: Optional[EventStream] = None,
                 state_dirname: str = STATE_DIRNAME, debug: bool = False):
        self.config = config or SessionConfig()
        if self.config.max_parallel_workstreams < 1:
            raise ValueError('max_parallel_workstreams must be at least 1')
        self.repo_root = repo_root
        self.workspaces = workspace_manager
        self.queue = integration_queue
        self.spec_generator = spec_generator
        self.executor = executor
        self.events = events or EventStream(debug=debug)
        self.state_dir = os.path.join(repo_root, state_dirname)
        self.debug = debug

        self.state = SessionState(session_id=_new_session_id(),
                                  config=self.config,
                                  queue_path=self.queue.queue_path)
        self._graph: Optional[DependencyGraph] = None
        self._cancel_requested = False
        self._pool: Optional[concurrent.futures.ThreadPoolExecutor] = None
        # future -> workstream id
        self._futures: Dict[concurrent.futures.Future, str] = {}
        # workstream id -> executions started
        self._attempts: Dict[str, int] = {}

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[ORCH] {msg}")

    def _emit(self, event_type: EventType, **data):
        self.events.emit(event_type, self.state.session_id, **data)

    # -- state persistence ----------------------------------------------------

    def _state_path(self) -> str:
        return os.path.join(self.state_dir, 'state.json')

    def save_state(self) -> str:
        self.state.updated_at = datetime.now().isoformat()
        self.state.active_workspaces = list(
            self.workspaces.all_workspaces().values())
        os.makedirs(self.state_dir, exist_ok=True)
        path = self._state_path()
        with open(path, 'w') as f:
            json.dump(asdict(self.state), f, indent=2)
        return path

    def load_state(self) -> bool:
        """Replace the in-memory session with the persisted one.

        Returns False (leaving the current session untouched) when there is
        no state file or it cannot be parsed. Loading never resumes
        execution; a session loaded as active is marked inactive.
        """
        path = self._state_path()
        if not os.path.exists(path):
            return False
        try:
            with open(path, 'r') as f:
                state = SessionState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            print(f"[ORCH] Warning: could not load state from {path}: {exc}")
            return False

        if state.active:
            print(f"[ORCH] Session {state.session_id} was interrupted; "
                  f"loaded for inspection only")
            state.active = False
        self.state = state
        self.config = state.config
        self.workspaces.restore_state({
            'original_branch': state.original_branch,
            'worktrees': state.active_workspaces,
        })
        if state.workstreams:
            try:
                self._graph = build_graph(state.workstreams)
            except (GraphError, SpecParseError) as exc:
                self._dbg(f"Stored workstreams do not form a graph: {exc}")
                self._graph = None
        return True

    def get_state(self) -> SessionState:
        return self.state

    def is_active(self) -> bool:
        return self.state.active

    # -- progress -------------------------------------------------------------

    def _set_phase(self, phase: SessionPhase):
        previous = self.state.phase
        self.state.phase = phase.value
        print(f"[ORCH] Phase: {previous} -> {phase.value}")
        self._emit(EventType.PHASE_CHANGED, previous=previous,
                   phase=phase.value)
        self.save_state()

    def create_progress(self, message: str = '',
                        current_workstream: Optional[str] = None
                        ) -> ProgressSnapshot:
        total = len(self.state.workstreams)
        completed = len(self.state.completed_workstreams)
        failed = len(self.state.failed_workstreams)
        blocked = len(self.state.blocked_workstreams)
        in_progress = len(self._futures)
        pending = max(total - completed - failed - blocked - in_progress, 0)
        percent = int(completed * 100 / total) if total else 0
        return ProgressSnapshot(
            phase=self.state.phase,
            total_workstreams=total,
            completed=completed,
            failed=failed,
            in_progress=in_progress,
            pending=pending,
            message=message,
            percent_complete=percent,
            current_workstream=current_workstream,
        )

    def _emit_progress(self, message: str,
                       current_workstream: Optional[str] = None):
        snapshot = self.create_progress(message, current_workstream)
        self._emit(EventType.PROGRESS, **asdict(snapshot))

    # -- session lifecycle ----------------------------------------------------

    def start(self, request: str, context_files: Optional[List[str]] = None,
              specs: Optional[List[WorkstreamSpec]] = None) -> SessionState:
        """Run a full session for *request* and return its final state.

        *specs* skips planning and uses the given workstreams as-is.
        Raises :class:`SessionActiveError` if a session is already running.
        """
        if self.state.active:
            raise SessionActiveError(
                f"Session {self.state.session_id} is already active")

        self.state = SessionState(
            session_id=_new_session_id(),
            config=self.config,
            active=True,
            original_branch=self.workspaces.get_original_branch(),
            queue_path=self.queue.queue_path,
            started_at=datetime.now().isoformat(),
        )
        self._cancel_requested = False
        self._attempts = {}
        self._graph = None
        print(f"[ORCH] Starting session {self.state.session_id} on "
              f"{self.state.original_branch}")
        self._emit(EventType.STARTED, request=request,
                   original_branch=self.state.original_branch)

        try:
            self._set_phase(SessionPhase.GENERATING_SPECS)
            if specs is None:
                specs = self.spec_generator.generate_specs(request,
                                                           context_files)
            self._graph = build_graph(specs)
            by_id = {s.id: s for s in specs}
            self.state.workstreams = [by_id[i]
                                      for i in self._graph.topological_order]
            self.spec_generator.save_specs(self.state.session_id,
                                           self.state.workstreams)
            print(f"[ORCH] {len(specs)} workstream(s): "
                  f"{', '.join(self._graph.topological_order)}")
            if self._halt_if_cancelled():
                return self.state

            self._set_phase(SessionPhase.CREATING_WORKTREES)
            self._create_worktrees()
            if self._halt_if_cancelled():
                return self.state

            self._set_phase(SessionPhase.EXECUTING)
            self._execute_workstreams()
            if self._halt_if_cancelled():
                return self.state

            if self.config.auto_merge:
                self._set_phase(SessionPhase.MERGING)
                self._process_merge_queue()
                if self._halt_if_cancelled():
                    return self.state

            if self.config.cleanup_worktrees:
                self._set_phase(SessionPhase.CLEANUP)
                self._cleanup()
            if self._halt_if_cancelled():
                return self.state

            print(f"[ORCH] Session {self.state.session_id} finished: "
                  f"{len(self.state.completed_workstreams)} completed, "
                  f"{len(self.state.failed_workstreams)} failed, "
                  f"{len(self.state.blocked_workstreams)} blocked")
            self._emit(EventType.COMPLETED,
                       completed=list(self.state.completed_workstreams),
                       failed=list(self.state.failed_workstreams),
                       blocked=list(self.state.blocked_workstreams))
            return self.state
        except Exception as exc:
            print(f"[ORCH] Session failed: {exc}")
            if self.debug:
                traceback.print_exc()
            self._emit(EventType.ERROR, error=str(exc), fatal=True)
            if self.config.cleanup_worktrees:
                self._cleanup()
            raise
        finally:
            self.state.active = False
            if self.state.phase != SessionPhase.IDLE.value:
                self._set_phase(SessionPhase.IDLE)
            else:
                self.save_state()

    def cancel(self):
        """Stop scheduling, drop workspaces and mark the session inactive.

        Running workstreams are not interrupted; their results are ignored.
        """
        print(f"[ORCH] Cancelling session {self.state.session_id}")
        self._cancel_requested = True
        self.state.active = False
        self._cleanup()
        self._emit(EventType.CANCELLED)
        self.save_state()

    def _halt_if_cancelled(self) -> bool:
        """After cancel(), drop anything created since its cleanup ran."""
        if not self._cancel_requested:
            return False
        print(f"[ORCH] Session {self.state.session_id} stopped during "
              f"{self.state.phase}")
        if self.workspaces.all_workspaces():
            self._cleanup()
        return True

    # -- worktrees ------------------------------------------------------------

    def _create_worktrees(self):
        for index, spec in enumerate(self.state.workstreams, start=1):
            if self._cancel_requested:
                break
            self._create_worktree(spec, index)

    def _release_workspace(self, ws_id: str):
        if (self.config.cleanup_worktrees
                and self.workspaces.get_workspace_path(ws_id)):
            self.workspaces.remove_workspace(ws_id, force=True)

    def _create_worktree(self, spec: WorkstreamSpec, index: int) -> str:
        result = self.workspaces.create_workspace(spec.id, index)
        if not result.success:
            raise WorkspaceCreationError(spec.id, result.error or 'unknown')
        print(f"[ORCH] Workspace for '{spec.id}' at {result.path}")
        self._emit(EventType.WORKSPACE_CREATED, workstream_id=spec.id,
                   path=result.path, branch=result.branch)
        self.save_state()
        return result.path

    # -- execution ------------------------------------------------------------

    def _commit_message(self, spec: WorkstreamSpec) -> str:
        return (f"{self.workspaces.prefix}({spec.id}): {spec.name}\n\n"
                f"{spec.description}")

    def _capture_commit(self, spec: WorkstreamSpec) -> Optional[str]:
        """Commit what the workstream left behind and return the single
        commit carrying all of its work, or None if it changed nothing."""
        message = self._commit_message(spec)
        self.workspaces.commit_changes(spec.id, message)
        ahead = self.workspaces.commits_ahead(spec.id)
        if ahead == 0:
            return None
        if ahead > 1:
            return self.workspaces.squash_commits(spec.id, message)
        return self.workspaces.head_commit(spec.id)

    def _run_workstream(self, spec: WorkstreamSpec,
                        workspace_path: str) -> ExecutionResult:
        """Worker-thread body: execute, then commit the workspace."""
        started = time.monotonic()
        result = self.executor(spec, workspace_path)
        if result.success and not result.commit_hash:
            stats = self.workspaces.get_diff_stats(spec.id)
            if stats is not None:
                result.lines_added = stats.insertions
                result.lines_removed = stats.deletions
            result.commit_hash = self._capture_commit(spec)
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    def _dispatch(self, spec: WorkstreamSpec):
        path = self.workspaces.get_workspace_path(spec.id)
        if path is None:
            index = [s.id for s in self.state.workstreams].index(spec.id) + 1
            path = self._create_worktree(spec, index)

        self._attempts[spec.id] = self._attempts.get(spec.id, 0) + 1
        future = self._pool.submit(self._run_workstream, spec, path)
        self._futures[future] = spec.id
        print(f"[ORCH] Started workstream '{spec.id}' in {path}")
        self._emit(EventType.WORKSTREAM_STARTED, workstream_id=spec.id,
                   attempt=self._attempts[spec.id], path=path)

    def _execute_workstreams(self):
        """Schedule ready workstreams until every one is terminal.

        A workstream is ready once all its dependencies completed; at most
        ``max_parallel_workstreams`` run at a time.
        """
        order = [s.id for s in self.state.workstreams]
        specs = {s.id: s for s in self.state.workstreams}
        pending: Set[str] = set(order)
        completed: Set[str] = set()
        cap = self.config.max_parallel_workstreams
        deadline = (time.monotonic()
                    + self.config.session_timeout_minutes * 60)

        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=cap, thread_name_prefix='workstream')
        timed_out = False
        cycle = 0
        try:
            while (pending or self._futures) and not self._cancel_requested:
                cycle += 1
                self._dbg(f"Scheduler tick {cycle}: {len(pending)} pending, "
                          f"{len(self._futures)} running")

                ready = ready_workstreams(
                    [specs[i] for i in order if i in pending], completed)
                for ws_id in ready[:cap - len(self._futures)]:
                    pending.discard(ws_id)
                    self._dispatch(specs[ws_id])

                if not self._futures:
                    # nothing running and nothing ready: the rest can never run
                    for ws_id in [i for i in order if i in pending]:
                        self._block(ws_id, 'unsatisfiable dependencies')
                    pending.clear()
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    raise SessionTimeoutError(
                        f"Session exceeded "
                        f"{self.config.session_timeout_minutes} minutes")

                done, _ = concurrent.futures.wait(
                    list(self._futures),
                    timeout=min(self.config.queue_poll_interval, remaining),
                    return_when=concurrent.futures.FIRST_COMPLETED)
                if self._cancel_requested:
                    break
                for future in done:
                    ws_id = self._futures.pop(future)
                    try:
                        result = future.result()
                    except Exception as exc:
                        result = ExecutionResult(workstream_id=ws_id,
                                                 success=False, error=str(exc))
                    self._handle_result(result, pending, completed)
                self.save_state()
        finally:
            if self._cancel_requested or timed_out:
                self._pool.shutdown(wait=False, cancel_futures=True)
            else:
                self._pool.shutdown(wait=True)
            self._futures = {}
            self._pool = None

    def _handle_result(self, result: ExecutionResult, pending: Set[str],
                       completed: Set[str]):
        ws_id = result.workstream_id
        if result.success:
            completed.add(ws_id)
            self.state.completed_workstreams.append(ws_id)
            if result.commit_hash:
                path = self.workspaces.get_workspace_path(ws_id) or ws_id
                self.queue.enqueue(ws_id, os.path.basename(path),
                                   status=QueueItemStatus.COMPLETED.value,
                                   commit_hash=result.commit_hash)
                print(f"[ORCH] Workstream '{ws_id}' completed "
                      f"({result.commit_hash[:10]})")
            else:
                print(f"[ORCH] Workstream '{ws_id}' completed, "
                      f"nothing to merge")
            self._emit(EventType.WORKSTREAM_COMPLETED, workstream_id=ws_id,
                       commit_hash=result.commit_hash,
                       duration_ms=result.duration_ms)
            self._emit_progress(f"Completed {ws_id}", ws_id)
            return

        error = result.error or 'unknown error'
        attempts = self._attempts.get(ws_id, 1)
        if (self.config.retry_failed_workstreams
                and attempts <= self.config.max_retries):
            print(f"[ORCH] Workstream '{ws_id}' failed ({error}); "
                  f"retrying ({attempts}/{self.config.max_retries})")
            self._emit(EventType.WORKSTREAM_FAILED, workstream_id=ws_id,
                       error=error, retrying=True)
            pending.add(ws_id)
            return

        print(f"[ORCH] Workstream '{ws_id}' failed: {error}")
        self.state.failed_workstreams.append(ws_id)
        self._emit(EventType.WORKSTREAM_FAILED, workstream_id=ws_id,
                   error=error, retrying=False)
        self._release_workspace(ws_id)
        if self._graph is not None:
            for dep_id in self._graph.topological_order:
                if (dep_id in pending
                        and dep_id in self._graph.transitive_dependents(ws_id)):
                    pending.discard(dep_id)
                    self._block(dep_id, f"dependency '{ws_id}' failed")
        self._emit_progress(f"Failed {ws_id}", ws_id)

    def _block(self, ws_id: str, reason: str):
        print(f"[ORCH] Workstream '{ws_id}' blocked: {reason}")
        self.state.blocked_workstreams.append(ws_id)
        self._emit(EventType.WORKSTREAM_BLOCKED, workstream_id=ws_id,
                   reason=reason)
        self._release_workspace(ws_id)

    # -- merge phase ----------------------------------------------------------

    def _process_merge_queue(self):
        print(f"[ORCH] Integrating {len(self.queue)} queued item(s) "
              f"onto {self.state.original_branch}")
        while not self._cancel_requested and self.queue.peek() is not None:
            item, result = self.queue.process_next(auto_resolve=True)
            if item is None:
                break
            ws_id = item.workstream_id
            if result.success:
                print(f"[ORCH] Merged '{ws_id}' "
                      f"({(result.commit_hash or '')[:10]})")
                self._emit(EventType.MERGED, workstream_id=ws_id,
                           commit_hash=result.commit_hash,
                           had_conflicts=result.had_conflicts,
                           resolution=result.resolution)
            elif result.had_conflicts:
                print(f"[ORCH] Conflict integrating '{ws_id}': "
                      f"{', '.join(result.conflict_files)}")
                self._emit(EventType.CONFLICT, workstream_id=ws_id,
                           conflict_files=list(result.conflict_files),
                           resolution=result.resolution)
                break
            else:
                print(f"[ORCH] Warning: could not integrate '{ws_id}': "
                      f"{result.error}")
                self._emit(EventType.ERROR, workstream_id=ws_id,
                           error=result.error, fatal=False)
        self.save_state()

    # -- cleanup --------------------------------------------------------------

    def _cleanup(self):
        results = self.workspaces.cleanup_all(force=True)
        self.workspaces.prune()
        removed = [ws_id for ws_id, ok in results.items() if ok]
        failed = [ws_id for ws_id, ok in results.items() if not ok]
        if failed:
            print(f"[ORCH] Warning: could not remove workspaces for "
                  f"{', '.join(failed)}")
        self._dbg(f"Removed {len(removed)} workspace(s)")
        self._emit(EventType.CLEANUP_COMPLETED, removed=removed,
                   failed=failed)
        self.save_state()


# -- factory --------------------------------------------------------------------

def is_orchestration_available(repo_root: Optional[str] = None) -> bool:
    """True when *repo_root* is inside a git work tree."""
    return is_git_repository(repo_root or os.getcwd())


def create_orchestrator(repo_root: Optional[str] = None,
                        config: Optional[SessionConfig] = None,
                        executor: Optional[Executor] = None,
                        planner: Optional[Planner] = None,
                        conflict_resolver: Optional[ConflictResolver] = None,
                        events: Optional[EventStream] = None,
                        debug: bool = False) -> Orchestrator:
    """Wire an :class:`Orchestrator` with the default collaborators.

    Without *executor* / *planner* the agent CLI is used for both.
    """
    config = config or default_session_config()
    workspaces = WorkspaceManager(
        prefix=config.worktree_prefix,
        repo_root=repo_root or os.getcwd(),
        worktree_base_path=config.worktree_base_path,
        debug=debug)
    root = workspaces.get_repo_root()
    queue = IntegrationQueue(
        config.queue_directory, root,
        target_branch=workspaces.get_original_branch(),
        conflict_strategy=config.conflict_strategy,
        conflict_resolution_agent=config.conflict_resolution_agent,
        conflict_resolver=conflict_resolver,
        debug=debug)
    spec_generator = SpecGenerator(
        planner=planner or AgentPlanner(root), project_root=root,
        state_dirname=STATE_DIRNAME, debug=debug)
    return Orchestrator(
        root, workspaces, queue, spec_generator,
        executor or AgentExecutor(config.workstream_timeout_minutes),
        config=config, events=events, debug=debug)
