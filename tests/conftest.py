"""
Shared pytest fixtures: throwaway git repositories, queue directories and
sample workstream specs.
"""
import subprocess
from pathlib import Path
from typing import List

import pytest

from worktree_orchestrator.models import WorkstreamSpec


def git(cwd, *args) -> str:
    result = subprocess.run(['git', *args], cwd=str(cwd), capture_output=True,
                            text=True, check=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, 'add', name)
    git(repo, 'commit', '-q', '-m', message)
    return git(repo, 'rev-parse', 'HEAD')


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A repository on branch ``main`` with one commit (README.md)."""
    repo = tmp_path / 'repo'
    repo.mkdir()
    git(repo, 'init', '-q')
    git(repo, 'checkout', '-q', '-b', 'main')
    git(repo, 'config', 'user.email', 'dev@example.com')
    git(repo, 'config', 'user.name', 'Dev')
    git(repo, 'config', 'commit.gpgsign', 'false')
    commit_file(repo, 'README.md', 'hello\n', 'initial commit')
    return repo


@pytest.fixture
def queue_dir(tmp_path) -> Path:
    path = tmp_path / 'queue'
    path.mkdir()
    return path


@pytest.fixture
def worktree_base(tmp_path) -> Path:
    return tmp_path / 'worktrees'


@pytest.fixture
def abc_specs() -> List[WorkstreamSpec]:
    """A and B are independent; C depends on A."""
    return [
        WorkstreamSpec(id='a', name='Workstream A', description='Build A'),
        WorkstreamSpec(id='b', name='Workstream B', description='Build B'),
        WorkstreamSpec(id='c', name='Workstream C', description='Build C',
                       dependencies=['a']),
    ]
