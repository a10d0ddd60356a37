"""Shared fixtures: isolated config cache and throwaway git repositories."""

import os
import subprocess
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from git_autofetch.config import Config

# Keeps real-git tests independent of the developer's ~/.gitconfig.
GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_GLOBAL": os.devnull,
    "GIT_CONFIG_NOSYSTEM": "1",
    "GIT_TERMINAL_PROMPT": "0",
}

RunGit = Callable[..., str]


@pytest.fixture(autouse=True)
def clear_config_cache() -> Iterator[None]:
    """Ensures every test starts with a clean config cache."""
    Config._global_cache = None
    yield
    Config._global_cache = None


@pytest.fixture
def run_git(monkeypatch: pytest.MonkeyPatch) -> RunGit:
    """Returns a helper that runs git in a directory and returns its stdout.

    The same identity and isolation variables are exported to the process so
    git commands issued by the code under test behave identically.
    """
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)

    def _run(cwd: Path, *args: str) -> str:
        res = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return res.stdout.strip()

    return _run


@pytest.fixture
def commit(run_git: RunGit) -> Callable[[Path, str], str]:
    """Returns a helper that writes a file, commits it and returns the new SHA."""

    def _commit(repo: Path, message: str) -> str:
        (repo / f"{message.replace(' ', '_')}.txt").write_text(message)
        run_git(repo, "add", ".")
        run_git(repo, "commit", "-q", "-m", message)
        return run_git(repo, "rev-parse", "HEAD")

    return _commit


@pytest.fixture
def origin_repo(tmp_path: Path, run_git: RunGit, commit: Callable) -> Path:
    """A bare repository whose `main` branch holds one commit."""
    bare = tmp_path / "origin.git"
    run_git(tmp_path, "init", "-q", "--bare", "-b", "main", str(bare))

    seed = tmp_path / "seed"
    run_git(tmp_path, "init", "-q", "-b", "main", str(seed))
    commit(seed, "initial")
    run_git(seed, "remote", "add", "origin", str(bare))
    run_git(seed, "push", "-q", "origin", "main")
    return bare


@pytest.fixture
def work_repo(tmp_path: Path, run_git: RunGit, origin_repo: Path) -> Path:
    """A working copy cloned from `origin_repo`."""
    work = tmp_path / "work"
    run_git(tmp_path, "clone", "-q", str(origin_repo), str(work))
    return work
