"""Environment variables and path constants.

All configuration is loaded once at import time from environment
variables (with optional ``.env`` file support via *python-dotenv*).
"""

import os
import shlex

from dotenv import load_dotenv

from worktree_orchestrator.models import SessionConfig
from worktree_orchestrator.workspace_manager import default_queue_directory

load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# -- Repository ---------------------------------------------------------------
GIT_REPO_PATH = os.getenv('GIT_REPO_PATH')
STATE_DIRNAME = os.getenv('ORCH_STATE_DIRNAME', '.orchestrator')

# -- Session defaults ---------------------------------------------------------
MAX_PARALLEL_WORKSTREAMS = int(os.getenv('ORCH_MAX_PARALLEL', '5'))
AUTO_MERGE = _env_flag('ORCH_AUTO_MERGE', True)
CLEANUP_WORKTREES = _env_flag('ORCH_CLEANUP_WORKTREES', True)
WORKTREE_PREFIX = os.getenv('ORCH_WORKTREE_PREFIX', 'orch')
WORKTREE_BASE_PATH = os.getenv('ORCH_WORKTREE_BASE')
QUEUE_DIRECTORY = os.getenv('ORCH_QUEUE_DIR', default_queue_directory())
QUEUE_POLL_INTERVAL = float(os.getenv('ORCH_POLL_INTERVAL', '5'))
SESSION_TIMEOUT_MINUTES = float(os.getenv('ORCH_SESSION_TIMEOUT_MINUTES',
                                          '240'))
WORKSTREAM_TIMEOUT_MINUTES = int(os.getenv('ORCH_WORKSTREAM_TIMEOUT_MINUTES',
                                           '120'))
CONFLICT_STRATEGY = os.getenv('ORCH_CONFLICT_STRATEGY', 'theirs')
CONFLICT_RESOLUTION_AGENT = os.getenv('ORCH_CONFLICT_AGENT', 'architect')
RETRY_FAILED_WORKSTREAMS = _env_flag('ORCH_RETRY_FAILED', False)
MAX_RETRIES = int(os.getenv('ORCH_MAX_RETRIES', '2'))

# -- Agent CLI ----------------------------------------------------------------
AGENT_COMMAND = shlex.split(os.getenv(
    'ORCH_AGENT_COMMAND', 'claude --dangerously-skip-permissions -p'))


def default_session_config(**overrides) -> SessionConfig:
    """Build a SessionConfig from the environment, applying *overrides*."""
    values = dict(
        max_parallel_workstreams=MAX_PARALLEL_WORKSTREAMS,
        auto_merge=AUTO_MERGE,
        conflict_resolution_agent=CONFLICT_RESOLUTION_AGENT,
        conflict_strategy=CONFLICT_STRATEGY,
        worktree_prefix=WORKTREE_PREFIX,
        cleanup_worktrees=CLEANUP_WORKTREES,
        queue_directory=QUEUE_DIRECTORY,
        queue_poll_interval=QUEUE_POLL_INTERVAL,
        worktree_base_path=WORKTREE_BASE_PATH,
        session_timeout_minutes=SESSION_TIMEOUT_MINUTES,
        workstream_timeout_minutes=WORKSTREAM_TIMEOUT_MINUTES,
        retry_failed_workstreams=RETRY_FAILED_WORKSTREAMS,
        max_retries=MAX_RETRIES,
    )
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SessionConfig(**values)
