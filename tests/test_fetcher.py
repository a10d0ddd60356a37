"""Tests for single-remote fetching, timeouts and abandoned-fetch tracking."""

import shutil
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autofetch.credentials import CredentialResolver
from git_autofetch.errors import (
    AuthFailedError,
    ConnectionTimeoutError,
    RemoteCreateError,
    RemoteFetchError,
)
from git_autofetch.fetcher import (
    InflightTracker,
    ensure_remote,
    fetch_remote,
    run_detached,
)
from git_autofetch.git_wrapper import GitRepo
from git_autofetch.models import FailureKind, RemoteSnapshot

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git binary not available"
)


@pytest.fixture
def resolver(mocker: MagicMock) -> CredentialResolver:
    """A resolver that never touches the real environment."""
    res = CredentialResolver()
    mocker.patch.object(
        res, "environment_for", return_value={"GIT_TERMINAL_PROMPT": "0"}
    )
    return res


@pytest.fixture
def mock_repo(mocker: MagicMock, tmp_path: Path) -> MagicMock:
    repo = mocker.MagicMock(spec=GitRepo)
    repo.path = tmp_path
    repo.remote_url.return_value = "https://example.com/r.git"
    return repo


def test_run_detached_returns_value() -> None:
    assert run_detached(lambda: 42, timeout=1) == 42


def test_run_detached_propagates_errors() -> None:
    def boom() -> None:
        raise RuntimeError("Git error: nope")

    with pytest.raises(RuntimeError, match="nope"):
        run_detached(boom, timeout=1)


def test_run_detached_abandons_slow_call() -> None:
    """Verifies that the caller regains control while the thread keeps running."""
    release = threading.Event()
    abandoned: list[threading.Thread] = []

    started = time.monotonic()
    with pytest.raises(TimeoutError):
        run_detached(release.wait, timeout=0.2, on_abandon=abandoned.append)
    elapsed = time.monotonic() - started

    assert elapsed < 2
    assert len(abandoned) == 1
    assert abandoned[0].is_alive()

    release.set()
    abandoned[0].join(timeout=2)
    assert not abandoned[0].is_alive()


def test_inflight_tracker_prunes_finished_threads() -> None:
    """Verifies that a repository stops being busy once its thread exits."""
    tracker = InflightTracker()
    release = threading.Event()
    thread = threading.Thread(target=release.wait, daemon=True)
    thread.start()

    tracker.track("/srv/a", thread)
    assert tracker.is_busy("/srv/a")
    assert not tracker.is_busy("/srv/b")
    assert tracker.active_keys() == ["/srv/a"]

    release.set()
    thread.join(timeout=2)
    assert not tracker.is_busy("/srv/a")
    assert tracker.active_keys() == []


def test_ensure_remote_creates_missing_remote(mock_repo: MagicMock) -> None:
    mock_repo.remote_url.return_value = None

    url = ensure_remote(
        mock_repo, RemoteSnapshot("upstream", "https://example.com/u.git")
    )

    assert url == "https://example.com/u.git"
    mock_repo.add_remote.assert_called_once_with(
        "upstream", "https://example.com/u.git"
    )


def test_ensure_remote_keeps_existing_remote(mock_repo: MagicMock) -> None:
    mock_repo.remote_url.return_value = "git@example.com:team/r.git"

    url = ensure_remote(
        mock_repo, RemoteSnapshot("origin", "https://example.com/r.git")
    )

    assert url == "git@example.com:team/r.git"
    mock_repo.add_remote.assert_not_called()


def test_remote_creation_failure(
    mock_repo: MagicMock, resolver: CredentialResolver
) -> None:
    """Verifies that a refused remote is reported as REMOTE_CREATE_FAILED."""
    mock_repo.remote_url.return_value = None
    mock_repo.add_remote.side_effect = RuntimeError("Git error: invalid name")

    with pytest.raises(RemoteCreateError) as excinfo:
        fetch_remote(mock_repo, RemoteSnapshot("bad name", "x"), 1, resolver=resolver)

    assert excinfo.value.kind == FailureKind.REMOTE_CREATE_FAILED
    mock_repo.fetch.assert_not_called()


def test_connection_timeout_detaches_fetch(
    mock_repo: MagicMock, resolver: CredentialResolver
) -> None:
    """Verifies that a hung fetch fails after the connection timeout.

    The blocked call is registered with the tracker under the repository path
    and keeps running until released.
    """
    release = threading.Event()
    mock_repo.fetch.side_effect = lambda *a, **kw: release.wait()
    tracker = InflightTracker()

    started = time.monotonic()
    with pytest.raises(ConnectionTimeoutError) as excinfo:
        fetch_remote(
            mock_repo,
            RemoteSnapshot("origin", "https://example.com/r.git"),
            connection_timeout=1,
            resolver=resolver,
            tracker=tracker,
        )
    elapsed = time.monotonic() - started

    assert 0.9 <= elapsed < 3
    assert excinfo.value.kind == FailureKind.CONNECTION_TIMEOUT
    assert "Connection timeout after 1 seconds" in str(excinfo.value)
    assert tracker.is_busy(str(mock_repo.path))

    release.set()


def test_hard_timeout_is_passed_to_git(
    mock_repo: MagicMock, resolver: CredentialResolver
) -> None:
    fetch_remote(
        mock_repo,
        RemoteSnapshot("origin", "https://example.com/r.git"),
        connection_timeout=5,
        resolver=resolver,
        hard_timeout=300,
    )

    mock_repo.fetch.assert_called_once_with(
        "origin", env={"GIT_TERMINAL_PROMPT": "0"}, timeout=300
    )


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("Git error: git@host: Permission denied (publickey).", AuthFailedError),
        ("Git error: Host key verification failed.", AuthFailedError),
        (
            "Git error: fatal: could not read Username for 'https://h': terminal "
            "prompts disabled",
            AuthFailedError,
        ),
        ("Git error: fatal: repository not found", RemoteFetchError),
        ("Git error: Could not resolve host: example.invalid", RemoteFetchError),
    ],
)
def test_fetch_failures_are_classified(
    mock_repo: MagicMock,
    resolver: CredentialResolver,
    stderr: str,
    expected: type,
) -> None:
    mock_repo.fetch.side_effect = RuntimeError(stderr)

    with pytest.raises(expected) as excinfo:
        fetch_remote(mock_repo, RemoteSnapshot("origin", "u"), 5, resolver=resolver)

    assert excinfo.value.remote == "origin"


def test_credential_failure_names_the_remote(
    mock_repo: MagicMock, mocker: MagicMock
) -> None:
    """Verifies that an unresolvable SSH credential fails before git runs."""
    mock_repo.remote_url.return_value = "git@host:r.git"
    res = CredentialResolver()
    mocker.patch.object(res, "agent_has_identity", return_value=False)
    res.ssh_dir = Path("/nonexistent")

    with pytest.raises(AuthFailedError) as excinfo:
        fetch_remote(
            mock_repo, RemoteSnapshot("origin", "git@host:r.git"), 5, resolver=res
        )

    assert excinfo.value.remote == "origin"
    mock_repo.fetch.assert_not_called()


def test_credentials_follow_the_url_git_will_use(
    mock_repo: MagicMock, mocker: MagicMock, tmp_path: Path
) -> None:
    """Verifies an SSH URL in the repository config wins over a stale record.

    The record still says HTTPS, but git will contact the SSH URL, so the
    fetch must carry a GIT_SSH_COMMAND for the key found on disk.
    """
    mock_repo.remote_url.return_value = "git@example.com:team/r.git"
    (tmp_path / "id_ed25519").write_text("key")
    res = CredentialResolver(ssh_dir=tmp_path)
    mocker.patch.object(res, "agent_has_identity", return_value=False)
    environment_for = mocker.spy(res, "environment_for")

    fetch_remote(
        mock_repo,
        RemoteSnapshot("origin", "https://example.com/r.git"),
        5,
        resolver=res,
    )

    assert environment_for.call_args.args[0] == "git@example.com:team/r.git"
    env = mock_repo.fetch.call_args.kwargs["env"]
    assert str(tmp_path / "id_ed25519") in env["GIT_SSH_COMMAND"]


@requires_git
def test_fetch_remote_against_real_repository(
    tmp_path: Path, work_repo: Path, origin_repo: Path
) -> None:
    """Verifies that a missing remote is created and fetched from a local path."""
    repo = GitRepo(work_repo)

    fetch_remote(repo, RemoteSnapshot("mirror", str(origin_repo)), 10)

    assert repo.remote_url("mirror") == str(origin_repo)
    assert repo.resolve_commit("refs/remotes/mirror/main") == repo.rev_parse("HEAD")
