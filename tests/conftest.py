"""Pytest configuration for all tests.

The git fixtures build real repositories under ``tmp_path`` and are
skipped when no ``git`` executable is available.
"""

import os
import shutil
import subprocess
from pathlib import Path

import pytest

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
}


def _git(cwd: Path, *args: str) -> str:
    env = dict(os.environ)
    env.update(GIT_IDENTITY)
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env=env,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture
def run_git():
    """Synchronous git runner for test setup and assertions."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    return _git


@pytest.fixture
def git_identity():
    return dict(GIT_IDENTITY)


@pytest.fixture
def git_repo(tmp_path, run_git):
    """A working repository on branch main with one committed file."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("# demo\n")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


@pytest.fixture
def bare_remote(tmp_path, git_repo, run_git):
    """A bare repository seeded with ``git_repo``'s main branch."""
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "-q", "--bare", str(remote))
    run_git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(git_repo, "push", "-q", str(remote), "main")
    return remote
