import datetime
import logging
import threading
import time
from collections.abc import Callable

from .config import TimeoutsConfig
from .constants import APP_NAME
from .credentials import CredentialResolver
from .divergence import compute_divergence
from .errors import RemoteError, RepoUnavailableError
from .fetcher import InflightTracker, fetch_remote
from .git_wrapper import GitRepo
from .models import (
    FAILURE_LABELS,
    FailureKind,
    FetchOutcome,
    FetchState,
    RemoteResult,
    RemoteStatus,
    RepositorySnapshot,
)

logger = logging.getLogger(APP_NAME)

ProgressCallback = Callable[[str, int], None]


def _open_repo(snapshot: RepositorySnapshot) -> GitRepo:
    """Opens the working copy.

    Raises:
        RepoUnavailableError: If the path is missing or not a git repository.
    """
    message = f"Repository not found at: {snapshot.local_path}"
    try:
        repo = GitRepo(snapshot.local_path)
    except ValueError as e:
        logger.debug(f"Cannot open {snapshot.local_path}: {e}")
        raise RepoUnavailableError(message) from e
    if not repo.is_valid():
        raise RepoUnavailableError(message)
    return repo


def _failure_message(results: list[RemoteResult]) -> str:
    failed = [
        f"{r.name}{FAILURE_LABELS[r.failure]}" for r in results if r.failure is not None
    ]
    return f"Some remotes failed: {', '.join(failed)}"


def _fetch_one(
    repo: GitRepo,
    snapshot: RepositorySnapshot,
    index: int,
    timeouts: TimeoutsConfig,
    resolver: CredentialResolver,
    tracker: InflightTracker | None,
) -> RemoteResult:
    """Fetches remote number `index` and turns the result into a RemoteResult."""
    remote = snapshot.remotes[index]
    logger.info(f"Fetching from remote: {remote.name} ({remote.url})")

    try:
        fetch_remote(
            repo,
            remote,
            connection_timeout=timeouts.connection,
            resolver=resolver,
            tracker=tracker,
            hard_timeout=max(timeouts.operation, timeouts.connection),
        )
    except RemoteError as e:
        logger.warning(f"FETCH ERROR {snapshot.name}/{remote.name}: {e.detail}")
        return RemoteResult(
            name=remote.name, status=RemoteStatus.ERROR, failure=e.kind, detail=e.detail
        )
    except Exception as e:
        logger.error(f"FETCH ERROR {snapshot.name}/{remote.name}: {e}")
        return RemoteResult(
            name=remote.name,
            status=RemoteStatus.ERROR,
            failure=FailureKind.FETCH_FAILED,
            detail=str(e),
        )

    ahead, behind = compute_divergence(repo, remote.name, snapshot.branch)
    logger.info(
        f"FETCHED {snapshot.name}/{remote.name}: +{ahead} ahead, -{behind} behind"
    )
    return RemoteResult(
        name=remote.name,
        status=RemoteStatus.SUCCESS,
        ahead=ahead,
        behind=behind,
        fetched_at=datetime.datetime.now(),
    )


def fetch_repository(
    snapshot: RepositorySnapshot,
    timeouts: TimeoutsConfig,
    *,
    stop_event: threading.Event | None = None,
    on_progress: ProgressCallback | None = None,
    resolver: CredentialResolver | None = None,
    tracker: InflightTracker | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FetchOutcome:
    """Fetches every remote of a repository, one after another.

    Steps:
    1. Zero remotes is a no-op (`SKIPPED`), without touching git.
    2. An unopenable working copy ends the attempt (`REPO_UNAVAILABLE`).
    3. Remotes are fetched sequentially. Before each one, a stop request or an
       elapsed operation timeout ends the attempt (`CANCELLED` /
       `OPERATION_TIMED_OUT`); remotes already processed keep their results.
    4. A failed remote is recorded and the next remote is still attempted.

    Args:
        snapshot (RepositorySnapshot): The repository configuration to fetch.
        timeouts (TimeoutsConfig): Operation and connection ceilings.
        stop_event (threading.Event | None): Set to request cancellation.
        on_progress (ProgressCallback | None): Receives (remote, percent)
            before each remote; percent is completed / total remotes.
        resolver (CredentialResolver | None): SSH credential source.
        tracker (InflightTracker | None): Receives abandoned fetch threads.
        clock (Callable[[], float]): Monotonic clock in seconds.

    Returns:
        FetchOutcome: The terminal state, message and per-remote results.
    """
    name = snapshot.name
    if not snapshot.remotes:
        logger.info(f"SKIPPED {name}: No remotes configured")
        return FetchOutcome(name, FetchState.SKIPPED, "No remotes configured")

    try:
        repo = _open_repo(snapshot)
    except RepoUnavailableError as e:
        logger.error(f"UNAVAILABLE {name}: {e}")
        return FetchOutcome(name, FetchState.REPO_UNAVAILABLE, str(e))

    resolver = resolver or CredentialResolver()
    deadline = clock() + timeouts.operation
    total = len(snapshot.remotes)
    results: list[RemoteResult] = []

    logger.info(f"Starting fetch for: {name} ({total} remotes)")

    for index, remote in enumerate(snapshot.remotes):
        if stop_event is not None and stop_event.is_set():
            logger.info(f"CANCELLED {name}: stopped before {remote.name}")
            return FetchOutcome(
                name, FetchState.CANCELLED, "Fetch cancelled", tuple(results)
            )

        if clock() >= deadline:
            message = f"Fetch timed out after {timeouts.operation} seconds"
            logger.warning(f"TIMEOUT {name}: {message}")
            return FetchOutcome(
                name, FetchState.OPERATION_TIMED_OUT, message, tuple(results)
            )

        if on_progress is not None:
            on_progress(remote.name, (index * 100) // total)

        results.append(_fetch_one(repo, snapshot, index, timeouts, resolver, tracker))

    if all(r.failure is None for r in results):
        return FetchOutcome(
            name,
            FetchState.ALL_SUCCEEDED,
            "All remotes fetched successfully",
            tuple(results),
        )
    return FetchOutcome(
        name, FetchState.PARTIAL_FAILURE, _failure_message(results), tuple(results)
    )
