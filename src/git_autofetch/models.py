"""Repository and remote records, their immutable snapshots, and fetch outcomes.

`Repository` and `Remote` are owned by the issuing context (CLI or daemon loop)
and are only mutated in response to events. Everything handed to the fetch
worker is a frozen snapshot.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .constants import DEFAULT_BRANCH, DEFAULT_FETCH_INTERVAL


class RemoteStatus(Enum):
    """Lifecycle of a single remote's last fetch."""

    READY = "Ready"
    FETCHING = "Fetching"
    SUCCESS = "Success"
    ERROR = "Error"


class RepoStatus(Enum):
    """Aggregate result of the last fetch attempt for a repository."""

    READY = "Ready"
    FETCHING = "Fetching"
    SUCCESS = "Success"
    PARTIAL = "Partial"
    ERROR = "Error"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    UNAVAILABLE = "Unavailable"


class FetchState(Enum):
    """Terminal states of one repository fetch attempt."""

    SKIPPED = "skipped"
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    REPO_UNAVAILABLE = "repo_unavailable"
    CANCELLED = "cancelled"
    OPERATION_TIMED_OUT = "operation_timed_out"


class FailureKind(Enum):
    """Why a single remote failed. Never aborts sibling remotes."""

    REMOTE_CREATE_FAILED = "remote_create_failed"
    FETCH_FAILED = "fetch_failed"
    CONNECTION_TIMEOUT = "connection_timeout"
    AUTH_FAILED = "auth_failed"


# Suffixes appended to a failed remote's name in the aggregate message.
FAILURE_LABELS: dict[FailureKind, str] = {
    FailureKind.REMOTE_CREATE_FAILED: " (remote create failed)",
    FailureKind.FETCH_FAILED: "",
    FailureKind.CONNECTION_TIMEOUT: " (connection timeout)",
    FailureKind.AUTH_FAILED: " (authentication failed)",
}

STATE_TO_STATUS: dict[FetchState, RepoStatus] = {
    FetchState.ALL_SUCCEEDED: RepoStatus.SUCCESS,
    FetchState.PARTIAL_FAILURE: RepoStatus.PARTIAL,
    FetchState.REPO_UNAVAILABLE: RepoStatus.UNAVAILABLE,
    FetchState.CANCELLED: RepoStatus.CANCELLED,
    FetchState.OPERATION_TIMED_OUT: RepoStatus.TIMEOUT,
}


@dataclass(frozen=True)
class RemoteSnapshot:
    """The parts of a remote the fetch worker is allowed to see."""

    name: str
    url: str


@dataclass(frozen=True)
class RepositorySnapshot:
    """An immutable copy of a repository's configuration at request time."""

    name: str
    local_path: Path
    branch: str
    remotes: tuple[RemoteSnapshot, ...]

    @property
    def key(self) -> str:
        return str(self.local_path)


@dataclass
class Remote:
    """A named fetch endpoint of a repository.

    Attributes:
        name (str): Remote name, unique within its repository.
        url (str): Fetch URL.
        last_fetch (datetime.datetime | None): Time of the last successful fetch.
        status (RemoteStatus): Result of the last fetch of this remote.
        commits_ahead (int): Local commits not on the remote-tracking branch.
        commits_behind (int): Remote-tracking commits not on the local branch.
    """

    name: str
    url: str
    last_fetch: datetime.datetime | None = None
    status: RemoteStatus = RemoteStatus.READY
    commits_ahead: int = 0
    commits_behind: int = 0


@dataclass
class Repository:
    """A local working copy kept in sync with its remotes.

    Attributes:
        name (str): Display name; together with `local_path` forms the key.
        local_path (Path): Location of the working copy.
        branch (str): Branch used for ahead/behind calculation.
        fetch_interval (int): Minutes between scheduled fetches (1-1440).
        enabled (bool): Whether scheduled and "fetch all" requests include it.
        last_fetch (datetime.datetime | None): Time of the last finished attempt.
        status (RepoStatus): Outcome of the last attempt.
        remotes (list[Remote]): Remotes fetched in order.
    """

    name: str
    local_path: Path
    branch: str = DEFAULT_BRANCH
    fetch_interval: int = DEFAULT_FETCH_INTERVAL
    enabled: bool = True
    last_fetch: datetime.datetime | None = None
    status: RepoStatus = RepoStatus.READY
    remotes: list[Remote] = field(default_factory=list)

    @property
    def key(self) -> str:
        return str(self.local_path)

    def remote(self, name: str) -> Remote | None:
        """Returns the remote called `name`, if configured."""
        for remote in self.remotes:
            if remote.name == name:
                return remote
        return None

    def is_due(self, now: datetime.datetime) -> bool:
        """Decides whether a scheduler tick at `now` should fetch this repository.

        A repository is due when it is enabled and it has never been fetched,
        or its own interval has fully elapsed since the last fetch.
        """
        if not self.enabled:
            return False
        if self.last_fetch is None:
            return True
        next_fetch = self.last_fetch + datetime.timedelta(minutes=self.fetch_interval)
        return next_fetch <= now

    def snapshot(self) -> RepositorySnapshot:
        """Copies the configuration the worker needs into an immutable value."""
        return RepositorySnapshot(
            name=self.name,
            local_path=self.local_path,
            branch=self.branch,
            remotes=tuple(RemoteSnapshot(r.name, r.url) for r in self.remotes),
        )


@dataclass(frozen=True)
class RemoteResult:
    """What happened to one remote during an attempt."""

    name: str
    status: RemoteStatus
    failure: FailureKind | None = None
    detail: str = ""
    ahead: int = 0
    behind: int = 0
    fetched_at: datetime.datetime | None = None


@dataclass(frozen=True)
class FetchOutcome:
    """The single result of one repository fetch attempt."""

    repository_name: str
    state: FetchState
    message: str
    remotes: tuple[RemoteResult, ...] = ()

    @property
    def success(self) -> bool:
        return self.state == FetchState.ALL_SUCCEEDED

    @property
    def failed_remotes(self) -> list[str]:
        return [r.name for r in self.remotes if r.failure is not None]
