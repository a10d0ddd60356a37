"""Fetching a single remote under a connection timeout.

`git fetch` cannot be interrupted cooperatively, so the call runs on its own
daemon thread and the caller waits on a future for at most the connection
timeout. When the timer wins the thread is detached rather than killed: it may
still finish or fail later, and its result is ignored. Detached threads are
recorded in an `InflightTracker` so no new attempt starts on a repository that
an abandoned fetch may still be writing to.
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, wait
from typing import TypeVar

from .constants import APP_NAME, SSH_AUTH_FAILURE_MARKERS
from .credentials import CredentialResolver
from .errors import (
    AuthFailedError,
    ConnectionTimeoutError,
    RemoteCreateError,
    RemoteFetchError,
)
from .git_wrapper import GitRepo
from .models import RemoteSnapshot

logger = logging.getLogger(APP_NAME)

T = TypeVar("T")


class InflightTracker:
    """Remembers detached fetch threads per repository.

    Thread-safe; written by the fetch worker and read by the scheduler.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._threads: dict[str, list[threading.Thread]] = {}

    def track(self, key: str, thread: threading.Thread) -> None:
        """Records a detached thread that may still touch repository `key`."""
        with self._lock:
            self._threads.setdefault(key, []).append(thread)

    def _prune(self, key: str) -> list[threading.Thread]:
        alive = [t for t in self._threads.get(key, []) if t.is_alive()]
        if alive:
            self._threads[key] = alive
        else:
            self._threads.pop(key, None)
        return alive

    def is_busy(self, key: str) -> bool:
        """Returns True while any detached fetch for `key` is still running."""
        with self._lock:
            return bool(self._prune(key))

    def active_keys(self) -> list[str]:
        """Lists repositories that still have running detached fetches."""
        with self._lock:
            return [key for key in list(self._threads) if self._prune(key)]


def run_detached(
    fn: Callable[[], T],
    timeout: float,
    name: str = "git-fetch",
    on_abandon: Callable[[threading.Thread], None] | None = None,
) -> T:
    """Runs `fn` on a daemon thread and waits at most `timeout` seconds.

    Args:
        fn (Callable[[], T]): The blocking call.
        timeout (float): Seconds to wait for completion.
        name (str): Thread name, for diagnostics.
        on_abandon (Callable | None): Called with the thread if it is abandoned.

    Returns:
        T: The value returned by `fn`.

    Raises:
        TimeoutError: If `fn` did not finish in time. The thread keeps running.
        Exception: Whatever `fn` raised, if it finished in time.
    """
    future: Future = Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(target=target, name=name, daemon=True)
    thread.start()

    done, _ = wait([future], timeout=timeout)
    if not done:
        if on_abandon is not None:
            on_abandon(thread)
        raise TimeoutError(f"{name} still running after {timeout}s")
    return future.result()


def ensure_remote(repo: GitRepo, remote: RemoteSnapshot) -> str:
    """Looks up the named remote and creates it from the configured URL if absent.

    Returns:
        str: The URL git will fetch from. For an existing remote this is the
        URL in the repository's own config, which may differ from the record.

    Raises:
        RemoteCreateError: If git refuses to create the remote.
    """
    if (url := repo.remote_url(remote.name)) is not None:
        return url
    logger.info(f"Creating remote {remote.name} ({remote.url}) in {repo.path.name}")
    try:
        repo.add_remote(remote.name, remote.url)
    except Exception as e:
        raise RemoteCreateError(remote.name, str(e)) from e
    return remote.url


def _is_auth_failure(message: str) -> bool:
    return any(marker in message for marker in SSH_AUTH_FAILURE_MARKERS)


def fetch_remote(
    repo: GitRepo,
    remote: RemoteSnapshot,
    connection_timeout: float,
    resolver: CredentialResolver | None = None,
    tracker: InflightTracker | None = None,
    hard_timeout: float | None = None,
) -> None:
    """Fetches one remote without blocking the caller past `connection_timeout`.

    Args:
        repo (GitRepo): The open repository.
        remote (RemoteSnapshot): The remote to fetch.
        connection_timeout (float): Seconds to wait for git to return.
        resolver (CredentialResolver | None): Supplies the SSH credential.
        tracker (InflightTracker | None): Receives the thread if abandoned.
        hard_timeout (float | None): Seconds after which the git process
                                     itself is killed, even when detached.

    Raises:
        RemoteCreateError: The remote could not be created.
        AuthFailedError: No credential resolved, or the server rejected it.
        ConnectionTimeoutError: Git did not return within the timeout.
        RemoteFetchError: Any other git failure.
    """
    resolver = resolver or CredentialResolver()

    url = ensure_remote(repo, remote)

    try:
        env = resolver.environment_for(
            url, connect_timeout=int(connection_timeout)
        )
    except AuthFailedError as e:
        raise AuthFailedError(remote.name, e.detail) from e

    def abandon(thread: threading.Thread) -> None:
        if tracker is not None:
            tracker.track(str(repo.path), thread)

    try:
        run_detached(
            lambda: repo.fetch(remote.name, env=env, timeout=hard_timeout),
            timeout=connection_timeout,
            name=f"git-fetch-{repo.path.name}-{remote.name}",
            on_abandon=abandon,
        )
    except TimeoutError as e:
        raise ConnectionTimeoutError(
            remote.name, f"Connection timeout after {connection_timeout} seconds"
        ) from e
    except RuntimeError as e:
        if _is_auth_failure(str(e)):
            raise AuthFailedError(remote.name, str(e)) from e
        raise RemoteFetchError(remote.name, str(e)) from e
