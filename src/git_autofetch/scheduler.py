"""The fetch worker: one background thread, one fetch at a time.

Git is driven from a single worker thread so at most one repository fetch is
ever in flight, process-wide. Callers submit repository snapshots and return
immediately; results come back as events on `FetchScheduler.events`.
"""

import datetime
import logging
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import replace

from .config import TimeoutsConfig
from .constants import APP_NAME
from .coordinator import fetch_repository
from .errors import FetchInProgressError
from .events import FetchErrored, FetchEvent, FetchFinished, FetchProgress, FetchStarted
from .fetcher import InflightTracker
from .models import FetchOutcome, FetchState, Repository, RepositorySnapshot

logger = logging.getLogger(APP_NAME)

# Terminal states reported as FetchFinished; all others become FetchErrored.
_FINISHED_STATES = {
    FetchState.SKIPPED,
    FetchState.ALL_SUCCEEDED,
    FetchState.PARTIAL_FAILURE,
    FetchState.CANCELLED,
}

FetchFn = Callable[..., FetchOutcome]


class FetchScheduler:
    """Accepts fetch requests and runs them sequentially on a worker thread.

    Attributes:
        events (queue.Queue[FetchEvent]): Lifecycle events, in emission order.
        tracker (InflightTracker): Detached fetches that may still be running.
    """

    def __init__(
        self,
        timeouts: TimeoutsConfig | None = None,
        fetch: FetchFn = fetch_repository,
        tracker: InflightTracker | None = None,
    ):
        self.events: queue.Queue[FetchEvent] = queue.Queue()
        self.tracker = tracker or InflightTracker()
        self._fetch = fetch
        self._timeouts = replace(timeouts) if timeouts else TimeoutsConfig()
        self._requests: queue.Queue[RepositorySnapshot | None] = queue.Queue()
        self._cancel = threading.Event()
        self._shutdown = threading.Event()
        self._lock = threading.Lock()
        self._pending: set[tuple[str, str]] = set()
        self._current: tuple[str, str] | None = None
        self._thread: threading.Thread | None = None

    # --- Lifecycle ---

    def start(self) -> None:
        """Starts the worker thread. Calling it twice is a no-op."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._worker, name="git-autofetch-worker", daemon=True
        )
        self._thread.start()

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancels the current fetch at the next remote boundary and stops the worker.

        Queued requests that have not started are dropped.

        Args:
            timeout (float | None): Seconds to wait for the worker to exit.
        """
        self._shutdown.set()
        self._cancel.set()
        self._drop_pending()
        self._requests.put(None)
        if self._thread is not None:
            self._thread.join(timeout)

    # --- Settings ---

    @property
    def timeouts(self) -> TimeoutsConfig:
        with self._lock:
            return replace(self._timeouts)

    def update_timeouts(self, timeouts: TimeoutsConfig) -> None:
        """Replaces the timeouts used by attempts that start after this call."""
        with self._lock:
            self._timeouts = replace(timeouts)

    # --- Requests ---

    @property
    def busy(self) -> bool:
        """True while a fetch is running or requests are queued."""
        with self._lock:
            return self._current is not None or bool(self._pending)

    def is_scheduled(self, repository: Repository) -> bool:
        """True if `repository` is queued or currently being fetched."""
        key = (repository.name, repository.key)
        with self._lock:
            return key == self._current or key in self._pending

    def submit(self, repository: Repository, manual: bool = False) -> bool:
        """Queues a fetch of `repository` behind any fetch already in flight.

        Args:
            repository (Repository): The repository to fetch; it is snapshotted.
            manual (bool): Whether a user asked for this fetch explicitly.

        Returns:
            bool: True if queued. False for repositories without remotes, and
            for scheduled requests of a repository already queued or running.

        Raises:
            FetchInProgressError: For manual requests of a repository that is
                already queued or running.
        """
        if not repository.remotes:
            logger.info(f"SKIPPED {repository.name}: No remotes configured")
            return False

        snapshot = repository.snapshot()
        key = (snapshot.name, snapshot.key)
        with self._lock:
            if key == self._current or key in self._pending:
                if manual:
                    raise FetchInProgressError(
                        f"A fetch of {snapshot.name} is already in progress"
                    )
                logger.debug(f"Fetch of {snapshot.name} already queued; skipping")
                return False
            self._pending.add(key)

        self._requests.put(snapshot)
        return True

    def submit_due(
        self, repositories: Iterable[Repository], now: datetime.datetime | None = None
    ) -> list[str]:
        """Queues every repository whose own interval has elapsed at `now`.

        Returns:
            list[str]: Names of the repositories queued by this tick.
        """
        now = now or datetime.datetime.now()
        return [
            repo.name
            for repo in repositories
            if repo.is_due(now) and self.submit(repo)
        ]

    def submit_enabled(self, repositories: Iterable[Repository]) -> list[str]:
        """Queues every enabled repository regardless of its interval."""
        return [
            repo.name for repo in repositories if repo.enabled and self.submit(repo)
        ]

    def stop_current(self) -> None:
        """Asks the running fetch to stop before its next remote."""
        self._cancel.set()

    # --- Worker ---

    def _drop_pending(self) -> None:
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                with self._lock:
                    self._pending.discard((item.name, item.key))

    def _emit(self, event: FetchEvent) -> None:
        self.events.put(event)

    def _worker(self) -> None:
        while True:
            snapshot = self._requests.get()
            if snapshot is None:
                break

            key = (snapshot.name, snapshot.key)
            with self._lock:
                self._pending.discard(key)
                self._current = key
                timeouts = replace(self._timeouts)

            # A stop requested during a previous attempt does not carry over.
            # Must precede the shutdown check; shutdown() sets both flags.
            self._cancel.clear()
            if self._shutdown.is_set():
                with self._lock:
                    self._current = None
                break

            try:
                self._process(snapshot, timeouts)
            finally:
                with self._lock:
                    self._current = None

    def _process(self, snapshot: RepositorySnapshot, timeouts: TimeoutsConfig) -> None:
        name, path = snapshot.name, snapshot.key
        self._emit(FetchStarted(name, path))

        if self.tracker.is_busy(path):
            message = "A previous fetch is still running in the background"
            logger.warning(f"SKIPPED {name}: {message}")
            self._emit(FetchErrored(name, path, message))
            return

        def on_progress(remote: str, percent: int) -> None:
            self._emit(FetchProgress(name, path, remote, percent))

        try:
            outcome = self._fetch(
                snapshot,
                timeouts,
                stop_event=self._cancel,
                on_progress=on_progress,
                tracker=self.tracker,
            )
        except Exception as e:
            logger.exception(f"FETCH ERROR {name}")
            self._emit(FetchErrored(name, path, str(e)))
            return

        if outcome.state in _FINISHED_STATES:
            self._emit(
                FetchFinished(name, path, outcome.success, outcome.message, outcome)
            )
        else:
            self._emit(FetchErrored(name, path, outcome.message, outcome))
