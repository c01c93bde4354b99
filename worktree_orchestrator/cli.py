"""CLI entry point: ``worktree-orch run|status|queue|cleanup``."""

import argparse
import os
import shlex
import signal
import sys

from worktree_orchestrator.agent import AgentExecutor, AgentPlanner
from worktree_orchestrator.config import (
    GIT_REPO_PATH, QUEUE_DIRECTORY, default_session_config,
)
from worktree_orchestrator.errors import OrchestratorError
from worktree_orchestrator.integration_queue import IntegrationQueue
from worktree_orchestrator.orchestrator import (
    create_orchestrator, is_orchestration_available,
)
from worktree_orchestrator.spec_generator import parse_specs
from worktree_orchestrator.utils import (
    cleanup_orphaned_worktrees, cleanup_stale_queue_items,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='worktree-orch',
        description='Run parallel coding workstreams in isolated git '
                    'worktrees and integrate the results')
    parser.add_argument('--repo', default=GIT_REPO_PATH,
                        help='Repository to operate on (default: '
                             'GIT_REPO_PATH or the current directory)')
    parser.add_argument('--queue-dir', default=None,
                        help=f'Integration queue directory '
                             f'(default: {QUEUE_DIRECTORY})')
    parser.add_argument('--debug', action='store_true',
                        help='Verbose output')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run a full orchestration session')
    run.add_argument('request', help='What to build')
    run.add_argument('--specs-file',
                     help='JSON array of workstream specs (skips planning)')
    run.add_argument('--context', nargs='*', default=None,
                     help='Files the planner should consider')
    run.add_argument('--max-parallel', type=int, default=None,
                     help='Max workstreams running at once')
    run.add_argument('--poll-interval', type=float, default=None,
                     help='Seconds between scheduler ticks')
    run.add_argument('--strategy', choices=['ours', 'theirs', 'union'],
                     default=None, help='Automatic conflict strategy')
    run.add_argument('--worktree-base', default=None,
                     help='Directory that holds the worktrees')
    run.add_argument('--no-merge', action='store_true',
                     help='Leave completed work in the queue')
    run.add_argument('--keep-worktrees', action='store_true',
                     help='Do not remove worktrees at the end')
    run.add_argument('--agent-command', default=None,
                     help='Agent CLI to run (the prompt is appended as the '
                          'last argument)')

    sub.add_parser('status', help='Show the last recorded session')

    queue = sub.add_parser('queue', help='Inspect the integration queue')
    queue.add_argument('--process', action='store_true',
                       help='Integrate every pending item now')
    queue.add_argument('--no-auto-resolve', action='store_true',
                       help='Leave conflicts to the resolver instead of '
                            'applying the conflict strategy')
    queue.add_argument('--clear', action='store_true',
                       help='Drop every queue entry')

    cleanup = sub.add_parser('cleanup',
                             help='Prune orphaned worktrees and old queue '
                                  'entries')
    cleanup.add_argument('--days', type=int, default=7,
                         help='Age in days of queue entries to remove '
                              '(default: 7)')
    return parser


def _config_from_args(args):
    return default_session_config(
        max_parallel_workstreams=getattr(args, 'max_parallel', None),
        queue_poll_interval=getattr(args, 'poll_interval', None),
        conflict_strategy=getattr(args, 'strategy', None),
        worktree_base_path=getattr(args, 'worktree_base', None),
        queue_directory=args.queue_dir,
        auto_merge=False if getattr(args, 'no_merge', False) else None,
        cleanup_worktrees=(False if getattr(args, 'keep_worktrees', False)
                           else None),
    )


def _cmd_run(args, repo: str) -> int:
    config = _config_from_args(args)
    command = shlex.split(args.agent_command) if args.agent_command else None
    orch = create_orchestrator(
        repo, config=config,
        executor=AgentExecutor(config.workstream_timeout_minutes, command),
        planner=AgentPlanner(repo, command=command),
        debug=args.debug)

    def _handle_signal(signum, frame):
        print(f"\n[ORCH] Received signal {signum}, cancelling session…")
        orch.cancel()

    specs = None
    if args.specs_file:
        with open(args.specs_file, 'r') as f:
            specs = parse_specs(f.read())

    previous = {sig: signal.signal(sig, _handle_signal)
                for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        state = orch.start(args.request, context_files=args.context,
                           specs=specs)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    print(f"Session {state.session_id}")
    print(f"  completed: {', '.join(state.completed_workstreams) or '-'}")
    print(f"  failed:    {', '.join(state.failed_workstreams) or '-'}")
    print(f"  blocked:   {', '.join(state.blocked_workstreams) or '-'}")
    return 1 if state.failed_workstreams or state.blocked_workstreams else 0


def _cmd_status(args, repo: str) -> int:
    orch = create_orchestrator(repo, config=_config_from_args(args),
                               debug=args.debug)
    if not orch.load_state():
        print("No session state recorded for this repository.")
        return 0
    state = orch.get_state()
    progress = orch.create_progress()
    activity = 'active' if state.active else 'inactive'
    print(f"Session {state.session_id} ({activity})")
    print(f"  phase:      {state.phase}")
    print(f"  branch:     {state.original_branch}")
    print(f"  progress:   {progress.completed}/{progress.total_workstreams} "
          f"({progress.percent_complete}%)")
    print(f"  failed:     {', '.join(state.failed_workstreams) or '-'}")
    print(f"  blocked:    {', '.join(state.blocked_workstreams) or '-'}")
    print(f"  workspaces: {len(state.active_workspaces)}")
    return 0


def _cmd_queue(args, repo: str) -> int:
    config = _config_from_args(args)
    queue = IntegrationQueue(config.queue_directory, repo,
                             conflict_strategy=config.conflict_strategy,
                             debug=args.debug)
    if args.clear:
        queue.clear()
        print("Queue cleared.")
        return 0

    if args.process:
        for item, result in queue.process_all(
                auto_resolve=not args.no_auto_resolve):
            outcome = 'merged' if result.success else (
                'conflict' if result.had_conflicts else 'failed')
            print(f"{item.workstream_id}: {outcome}"
                  + (f" ({result.error})" if result.error else ""))

    stats = queue.get_stats()
    print(" ".join(f"{k}={v}" for k, v in stats.items()))
    for item in queue.all_items():
        integrated = ' integrated' if item.integrated_commit else ''
        print(f"  {item.workstream_id:<24} {item.status:<12}"
              f"{(item.commit_hash or '-')[:10]}{integrated}")
    return 0


def _cmd_cleanup(args, repo: str) -> int:
    config = _config_from_args(args)
    cleanup_orphaned_worktrees(repo, debug=args.debug)
    removed = cleanup_stale_queue_items(config.queue_directory, args.days)
    print(f"Removed {len(removed)} stale queue entries.")
    return 0


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    repo = os.path.abspath(args.repo or os.getcwd())

    if not is_orchestration_available(repo):
        print(f"ERROR: {repo} is not a git repository")
        return 1

    handlers = {
        'run': _cmd_run,
        'status': _cmd_status,
        'queue': _cmd_queue,
        'cleanup': _cmd_cleanup,
    }
    try:
        return handlers[args.command](args, repo)
    except OrchestratorError as exc:
        print(f"ERROR: {exc}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
