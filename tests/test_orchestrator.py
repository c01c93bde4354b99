"""End-to-end tests for the Orchestrator against real git repositories.

Executors are plain callables that write files into the workspace, so the
whole pipeline (worktrees, scheduling, queueing, cherry-picking and
cleanup) runs for real without an agent CLI.
"""

import json
import os
import threading
import time

import pytest

from conftest import git
from worktree_orchestrator.errors import (
    SessionActiveError, SessionTimeoutError, SpecParseError,
    UnknownDependencyError, WorkspaceCreationError,
)
from worktree_orchestrator.events import EventType
from worktree_orchestrator.models import (
    ExecutionResult, SessionConfig, WorkstreamSpec,
)
from worktree_orchestrator.orchestrator import (
    create_orchestrator, is_orchestration_available,
)


class FileWriter:
    """Executor that writes ``<id>.txt`` after a short delay and records
    how many workstreams ran at once."""

    def __init__(self, delay=0.2, fail=(), fail_once=(), silent=(),
                 contents=None):
        self.delay = delay
        self.fail = set(fail)
        self.fail_once = set(fail_once)
        self.silent = set(silent)
        self.contents = contents or {}
        self.lock = threading.Lock()
        self.running = 0
        self.max_running = 0
        self.started = []
        self.finished = []
        self.finished_before = {}

    def __call__(self, spec, workspace_path):
        with self.lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            self.started.append(spec.id)
            self.finished_before[spec.id] = set(self.finished)
        try:
            time.sleep(self.delay)
            if spec.id in self.fail:
                return ExecutionResult(spec.id, False, error='boom')
            if spec.id in self.fail_once:
                self.fail_once.discard(spec.id)
                return ExecutionResult(spec.id, False, error='flaky')
            if spec.id not in self.silent:
                name, content = self.contents.get(
                    spec.id, (f'{spec.id}.txt', f'{spec.id}\n'))
                with open(os.path.join(workspace_path, name), 'w') as f:
                    f.write(content)
            return ExecutionResult(spec.id, True)
        finally:
            with self.lock:
                self.running -= 1
                self.finished.append(spec.id)


def make_orchestrator(repo, queue_dir, worktree_base, executor,
                      planner=None, **overrides):
    values = dict(queue_directory=str(queue_dir),
                  worktree_base_path=str(worktree_base),
                  queue_poll_interval=0.05)
    values.update(overrides)
    return create_orchestrator(str(repo), config=SessionConfig(**values),
                               executor=executor,
                               planner=planner or (lambda prompt: '[]'))


def record_events(orch):
    events = []
    orch.events.subscribe(events.append)
    return events


def of_type(events, event_type):
    return [e for e in events if e.type == event_type]


def worktree_branches(repo):
    out = git(repo, 'worktree', 'list', '--porcelain')
    return [line.split(' ', 1)[1] for line in out.splitlines()
            if line.startswith('branch ')]


# -----------------------------------------------------------------------------
# Full sessions
# -----------------------------------------------------------------------------


class TestSessionLifecycle:

    def test_parallel_session_end_to_end(self, git_repo, queue_dir,
                                         worktree_base, abc_specs):
        executor = FileWriter()
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, max_parallel_workstreams=2)
        events = record_events(orch)

        state = orch.start('Build A, B and C', specs=abc_specs)

        assert sorted(state.completed_workstreams) == ['a', 'b', 'c']
        assert state.failed_workstreams == []
        assert state.blocked_workstreams == []
        assert not state.active
        assert state.phase == 'idle'

        # bounded parallelism and dependency ordering
        assert executor.max_running <= 2
        assert 'a' in executor.finished_before['c']

        # every workstream landed on main
        for ws_id in ('a', 'b', 'c'):
            assert (git_repo / f'{ws_id}.txt').read_text() == f'{ws_id}\n'
        assert git(git_repo, 'branch', '--show-current') == 'main'

        # workspaces and their branches are gone
        assert worktree_branches(git_repo) == ['refs/heads/main']
        assert git(git_repo, 'branch', '--list', 'orch/*') == ''
        assert state.active_workspaces == []

        phases = [e.data['phase'] for e in of_type(events,
                                                   EventType.PHASE_CHANGED)]
        assert phases == ['generating_specs', 'creating_worktrees',
                          'executing', 'merging', 'cleanup', 'idle']
        assert len(of_type(events, EventType.WORKSPACE_CREATED)) == 3
        assert len(of_type(events, EventType.MERGED)) == 3
        assert len(of_type(events, EventType.COMPLETED)) == 1
        assert of_type(events, EventType.STARTED)[0].data['request'] == \
            'Build A, B and C'

    def test_worktree_naming(self, git_repo, queue_dir, worktree_base,
                             abc_specs):
        created = []
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        orch.events.subscribe(
            lambda e: created.append((e.data['workstream_id'],
                                      os.path.basename(e.data['path']),
                                      e.data['branch']))
            if e.type == EventType.WORKSPACE_CREATED else None)
        orch.start('x', specs=abc_specs)
        assert created == [('a', 'orch-1', 'orch/a'),
                           ('b', 'orch-2', 'orch/b'),
                           ('c', 'orch-3', 'orch/c')]

    def test_specs_from_planner(self, git_repo, queue_dir, worktree_base):
        prompts = []

        def planner(prompt):
            prompts.append(prompt)
            return json.dumps([{'id': 'docs', 'name': 'Docs',
                                'description': 'Write docs'}])

        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0), planner=planner)
        state = orch.start('Document the project', context_files=['x.py'])
        assert state.completed_workstreams == ['docs']
        assert 'Document the project' in prompts[0]
        assert (git_repo / 'docs.txt').exists()

    def test_progress_snapshot(self, git_repo, queue_dir, worktree_base,
                               abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        events = record_events(orch)
        orch.start('x', specs=abc_specs)

        progress = orch.create_progress('done')
        assert progress.total_workstreams == 3
        assert progress.completed == 3
        assert progress.percent_complete == 100
        assert progress.pending == 0
        last = of_type(events, EventType.PROGRESS)[-1]
        assert last.data['completed'] == 3

    def test_conflicting_workstreams_are_auto_resolved(
            self, git_repo, queue_dir, worktree_base):
        specs = [WorkstreamSpec(id='one', name='One', description='1'),
                 WorkstreamSpec(id='two', name='Two', description='2')]
        executor = FileWriter(delay=0, contents={
            'one': ('README.md', 'one\n'),
            'two': ('README.md', 'two\n'),
        })
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, max_parallel_workstreams=1)
        events = record_events(orch)
        orch.start('x', specs=specs)

        merged = of_type(events, EventType.MERGED)
        assert [e.data['had_conflicts'] for e in merged] == [False, True]
        assert (git_repo / 'README.md').read_text() == 'two\n'


class TestFailures:

    def test_failure_blocks_dependents(self, git_repo, queue_dir,
                                       worktree_base, abc_specs):
        executor = FileWriter(delay=0.05, fail=['a'])
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor)
        events = record_events(orch)

        state = orch.start('x', specs=abc_specs)

        assert state.failed_workstreams == ['a']
        assert state.blocked_workstreams == ['c']
        assert state.completed_workstreams == ['b']
        assert 'c' not in executor.started
        blocked = of_type(events, EventType.WORKSTREAM_BLOCKED)
        assert blocked[0].data['workstream_id'] == 'c'
        failed = of_type(events, EventType.WORKSTREAM_FAILED)
        assert failed[0].data['error'] == 'boom'
        assert (git_repo / 'b.txt').exists()
        assert not (git_repo / 'a.txt').exists()

    def test_executor_exception_counts_as_failure(self, git_repo, queue_dir,
                                                  worktree_base):
        def explode(spec, path):
            raise RuntimeError('executor crashed')

        specs = [WorkstreamSpec(id='a', name='A', description='a')]
        orch = make_orchestrator(git_repo, queue_dir, worktree_base, explode)
        events = record_events(orch)
        state = orch.start('x', specs=specs)
        assert state.failed_workstreams == ['a']
        failed = of_type(events, EventType.WORKSTREAM_FAILED)
        assert failed[0].data['error'] == 'executor crashed'

    def test_retry_failed_workstream(self, git_repo, queue_dir,
                                     worktree_base, abc_specs):
        executor = FileWriter(delay=0, fail_once=['a'])
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, retry_failed_workstreams=True,
                                 max_retries=2)
        state = orch.start('x', specs=abc_specs)
        assert sorted(state.completed_workstreams) == ['a', 'b', 'c']
        assert executor.started.count('a') == 2

    def test_retries_are_bounded(self, git_repo, queue_dir, worktree_base):
        executor = FileWriter(delay=0, fail=['a'])
        specs = [WorkstreamSpec(id='a', name='A', description='a')]
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, retry_failed_workstreams=True,
                                 max_retries=2)
        state = orch.start('x', specs=specs)
        assert state.failed_workstreams == ['a']
        assert executor.started.count('a') == 3

    def test_invalid_graph_aborts_before_worktrees(self, git_repo, queue_dir,
                                                   worktree_base):
        specs = [WorkstreamSpec(id='a', name='A', description='a',
                                dependencies=['ghost'])]
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        events = record_events(orch)
        with pytest.raises(UnknownDependencyError):
            orch.start('x', specs=specs)
        assert not orch.is_active()
        assert orch.get_state().phase == 'idle'
        assert of_type(events, EventType.ERROR)[0].data['fatal'] is True
        assert not worktree_base.exists()

    def test_unsafe_id_aborts_before_worktrees(self, git_repo, queue_dir,
                                               worktree_base):
        specs = [WorkstreamSpec(id='api/auth', name='Auth', description='a')]
        executor = FileWriter()
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor)
        with pytest.raises(SpecParseError, match='Invalid workstream id'):
            orch.start('x', specs=specs)
        assert executor.started == []
        assert not worktree_base.exists()
        assert list(queue_dir.iterdir()) == []

    def test_failed_workspaces_are_released_early(self, git_repo, queue_dir,
                                                  worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0, fail=['a']),
                                 max_parallel_workstreams=1)
        tracked = []

        def on_failure_progress(event):
            if (event.type == EventType.PROGRESS
                    and event.data['message'] == 'Failed a'):
                tracked.extend(orch.workspaces.all_workspaces())

        orch.events.subscribe(on_failure_progress)
        orch.start('x', specs=abc_specs)
        assert tracked == ['b']

    def test_workspace_creation_failure_aborts(self, git_repo, queue_dir,
                                               worktree_base, abc_specs):
        git(git_repo, 'branch', 'orch/b')
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        with pytest.raises(WorkspaceCreationError) as exc_info:
            orch.start('x', specs=abc_specs)
        assert exc_info.value.workstream_id == 'b'
        assert worktree_branches(git_repo) == ['refs/heads/main']
        # the pre-existing branch belongs to someone else
        assert 'orch/b' in git(git_repo, 'branch', '--list', 'orch/b')

    def test_session_timeout(self, git_repo, queue_dir, worktree_base):
        def slow(spec, path):
            time.sleep(1)
            return ExecutionResult(spec.id, True)

        specs = [WorkstreamSpec(id='slow', name='Slow', description='s')]
        orch = make_orchestrator(git_repo, queue_dir, worktree_base, slow,
                                 session_timeout_minutes=0.001)
        with pytest.raises(SessionTimeoutError):
            orch.start('x', specs=specs)
        assert not orch.is_active()


class TestNoChanges:

    def test_workstream_without_changes_completes(self, git_repo, queue_dir,
                                                  worktree_base, abc_specs):
        executor = FileWriter(delay=0, silent=['a'])
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor)
        events = record_events(orch)
        state = orch.start('x', specs=abc_specs)

        assert sorted(state.completed_workstreams) == ['a', 'b', 'c']
        assert orch.queue.get_item('a') is None
        assert 'c' in executor.started
        completed = {e.data['workstream_id']: e.data['commit_hash']
                     for e in of_type(events, EventType.WORKSTREAM_COMPLETED)}
        assert completed['a'] is None

    def test_agent_commits_are_squashed(self, git_repo, queue_dir,
                                        worktree_base):
        def committer(spec, path):
            for name in ('one.txt', 'two.txt'):
                with open(os.path.join(path, name), 'w') as f:
                    f.write(name)
                git(path, 'add', name)
                git(path, 'commit', '-q', '-m', f'add {name}')
            return ExecutionResult(spec.id, True)

        before = int(git(git_repo, 'rev-list', '--count', 'HEAD'))
        specs = [WorkstreamSpec(id='multi', name='Multi', description='m')]
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 committer)
        orch.start('x', specs=specs)
        assert (git_repo / 'one.txt').exists()
        assert (git_repo / 'two.txt').exists()
        assert int(git(git_repo, 'rev-list', '--count', 'HEAD')) == before + 1


class TestConfiguration:

    def test_without_auto_merge_items_stay_queued(self, git_repo, queue_dir,
                                                  worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0), auto_merge=False)
        events = record_events(orch)
        orch.start('x', specs=abc_specs)
        assert not (git_repo / 'a.txt').exists()
        assert orch.queue.get_stats()['completed'] == 3
        assert of_type(events, EventType.MERGED) == []

    def test_keep_worktrees(self, git_repo, queue_dir, worktree_base,
                            abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0),
                                 cleanup_worktrees=False)
        state = orch.start('x', specs=abc_specs)
        assert len(state.active_workspaces) == 3
        assert (worktree_base / 'orch-1').is_dir()

    def test_max_parallel_must_be_positive(self, git_repo, queue_dir,
                                           worktree_base):
        with pytest.raises(ValueError):
            make_orchestrator(git_repo, queue_dir, worktree_base,
                              FileWriter(), max_parallel_workstreams=0)

    def test_orchestration_availability(self, git_repo, tmp_path):
        plain = tmp_path / 'plain'
        plain.mkdir()
        assert is_orchestration_available(str(git_repo))
        assert not is_orchestration_available(str(plain))


# -----------------------------------------------------------------------------
# Concurrency control
# -----------------------------------------------------------------------------


class TestSessionControl:

    def test_second_start_is_rejected(self, git_repo, queue_dir,
                                      worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        errors = []

        def reenter(event):
            if event.type == EventType.STARTED:
                try:
                    orch.start('again', specs=abc_specs)
                except SessionActiveError as exc:
                    errors.append(exc)

        orch.events.subscribe(reenter)
        orch.start('x', specs=abc_specs)
        assert len(errors) == 1
        assert not orch.is_active()

    def test_cancel_stops_scheduling(self, git_repo, queue_dir,
                                     worktree_base, abc_specs):
        executor = FileWriter(delay=0)
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, max_parallel_workstreams=1)
        events = record_events(orch)

        def cancel_after_first(event):
            if event.type == EventType.WORKSTREAM_COMPLETED:
                orch.cancel()

        orch.events.subscribe(cancel_after_first)
        state = orch.start('x', specs=abc_specs)

        assert executor.started == ['a']
        assert not state.active
        assert len(of_type(events, EventType.CANCELLED)) == 1
        assert of_type(events, EventType.MERGED) == []
        assert of_type(events, EventType.COMPLETED) == []
        assert worktree_branches(git_repo) == ['refs/heads/main']

    def test_cancel_during_spec_generation(self, git_repo, queue_dir,
                                           worktree_base):
        def plan(prompt):
            orch.cancel()
            return '[{"id": "a", "description": "a"}]'

        executor = FileWriter(delay=0)
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor, planner=plan)
        events = record_events(orch)
        state = orch.start('x')

        assert executor.started == []
        assert of_type(events, EventType.WORKSPACE_CREATED) == []
        assert of_type(events, EventType.COMPLETED) == []
        assert state.phase == 'idle'
        assert worktree_branches(git_repo) == ['refs/heads/main']

    def test_cancel_during_worktree_creation(self, git_repo, queue_dir,
                                             worktree_base, abc_specs):
        executor = FileWriter(delay=0)
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 executor)
        events = record_events(orch)

        def cancel_on_first_workspace(event):
            if event.type == EventType.WORKSPACE_CREATED:
                orch.cancel()

        orch.events.subscribe(cancel_on_first_workspace)
        orch.start('x', specs=abc_specs)

        assert len(of_type(events, EventType.WORKSPACE_CREATED)) == 1
        assert executor.started == []
        assert worktree_branches(git_repo) == ['refs/heads/main']
        for ws_id in ('a', 'b', 'c'):
            assert git(git_repo, 'branch', '--list', f'orch/{ws_id}') == ''
        assert of_type(events, EventType.COMPLETED) == []

    def test_cancel_during_merging(self, git_repo, queue_dir, worktree_base,
                                   abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        events = record_events(orch)

        def cancel_on_first_merge(event):
            if event.type == EventType.MERGED:
                orch.cancel()

        orch.events.subscribe(cancel_on_first_merge)
        orch.start('x', specs=abc_specs)

        types = [e.type for e in events]
        cancelled_at = types.index(EventType.CANCELLED)
        assert EventType.MERGED not in types[cancelled_at:]
        assert EventType.COMPLETED not in types
        assert len(of_type(events, EventType.MERGED)) == 1
        merged_files = [n for n in ('a.txt', 'b.txt', 'c.txt')
                        if (git_repo / n).exists()]
        assert len(merged_files) == 1
        waiting = [i for i in orch.queue.all_items()
                   if not i.integrated_commit]
        assert len(waiting) == 2
        assert worktree_branches(git_repo) == ['refs/heads/main']

    def test_cancel_cleans_up_even_when_worktrees_are_kept(
            self, git_repo, queue_dir, worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0),
                                 max_parallel_workstreams=1,
                                 cleanup_worktrees=False)

        def cancel_after_first(event):
            if event.type == EventType.WORKSTREAM_COMPLETED:
                orch.cancel()

        orch.events.subscribe(cancel_after_first)
        state = orch.start('x', specs=abc_specs)

        assert worktree_branches(git_repo) == ['refs/heads/main']
        assert state.active_workspaces == []

    def test_cancel_when_idle(self, git_repo, queue_dir, worktree_base):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        events = record_events(orch)
        orch.cancel()
        assert not orch.is_active()
        assert len(of_type(events, EventType.CANCELLED)) == 1


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


class TestStatePersistence:

    def test_state_is_written_and_loaded(self, git_repo, queue_dir,
                                         worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        state = orch.start('x', specs=abc_specs)
        assert (git_repo / '.orchestrator' / 'state.json').exists()

        fresh = make_orchestrator(git_repo, queue_dir, worktree_base,
                                  FileWriter())
        assert fresh.load_state()
        loaded = fresh.get_state()
        assert loaded.session_id == state.session_id
        assert sorted(loaded.completed_workstreams) == ['a', 'b', 'c']
        assert [s.id for s in loaded.workstreams] == ['a', 'b', 'c']
        assert loaded.workstreams[2].dependencies == ['a']
        assert loaded.original_branch == 'main'

    def test_specs_are_saved_per_session(self, git_repo, queue_dir,
                                         worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0))
        state = orch.start('x', specs=abc_specs)
        loaded = orch.spec_generator.load_specs(state.session_id)
        assert [s.id for s in loaded] == ['a', 'b', 'c']

    def test_loading_restores_workspace_tracking(self, git_repo, queue_dir,
                                                 worktree_base, abc_specs):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter(delay=0),
                                 cleanup_worktrees=False)
        orch.start('x', specs=abc_specs)

        fresh = make_orchestrator(git_repo, queue_dir, worktree_base,
                                  FileWriter())
        assert fresh.load_state()
        assert fresh.workspaces.all_workspaces() == \
            orch.workspaces.all_workspaces()

    def test_missing_state(self, git_repo, queue_dir, worktree_base):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        assert orch.load_state() is False

    def test_malformed_state_is_ignored(self, git_repo, queue_dir,
                                        worktree_base):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        session_id = orch.get_state().session_id
        state_dir = git_repo / '.orchestrator'
        state_dir.mkdir()
        (state_dir / 'state.json').write_text('{"session_id": ')
        assert orch.load_state() is False
        assert orch.get_state().session_id == session_id

    def test_interrupted_session_loads_inactive(self, git_repo, queue_dir,
                                                worktree_base):
        orch = make_orchestrator(git_repo, queue_dir, worktree_base,
                                 FileWriter())
        orch.state.active = True
        orch.save_state()

        fresh = make_orchestrator(git_repo, queue_dir, worktree_base,
                                  FileWriter())
        assert fresh.load_state()
        assert not fresh.is_active()
