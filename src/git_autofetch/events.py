"""Lifecycle events passed from the fetch worker to the issuing context.

Events are immutable messages delivered over a queue. Every attempt produces
`FetchStarted`, zero or more `FetchProgress`, and exactly one terminal event:
`FetchFinished` or `FetchErrored`. `apply_event` is the consumer side; it is
enough to keep repository records and their persistence up to date.
"""

import datetime
from dataclasses import dataclass

from .models import (
    STATE_TO_STATUS,
    FetchOutcome,
    RemoteStatus,
    Repository,
    RepoStatus,
)


@dataclass(frozen=True)
class FetchStarted:
    repository: str
    local_path: str


@dataclass(frozen=True)
class FetchProgress:
    repository: str
    local_path: str
    remote: str
    percent: int


@dataclass(frozen=True)
class FetchFinished:
    repository: str
    local_path: str
    success: bool
    message: str
    outcome: FetchOutcome


@dataclass(frozen=True)
class FetchErrored:
    repository: str
    local_path: str
    message: str
    outcome: FetchOutcome | None = None


FetchEvent = FetchStarted | FetchProgress | FetchFinished | FetchErrored

TERMINAL_EVENTS = (FetchFinished, FetchErrored)


def is_terminal(event: FetchEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


def _find(repositories: list[Repository], event: FetchEvent) -> Repository | None:
    for repo in repositories:
        if repo.name == event.repository and repo.key == event.local_path:
            return repo
    return None


def _apply_outcome(repo: Repository, outcome: FetchOutcome) -> None:
    for result in outcome.remotes:
        remote = repo.remote(result.name)
        if remote is None:
            # Removed from the configuration while the fetch was running.
            continue
        remote.status = result.status
        if result.status == RemoteStatus.SUCCESS:
            remote.commits_ahead = result.ahead
            remote.commits_behind = result.behind
            remote.last_fetch = result.fetched_at


def apply_event(
    repositories: list[Repository],
    event: FetchEvent,
    now: datetime.datetime | None = None,
) -> Repository | None:
    """Updates the matching repository record from a single event.

    Progress marks the remote being fetched; terminal events settle it.
    Terminal events stamp `last_fetch` even on failure, so a failing
    repository is retried on its next interval rather than on every tick.

    Args:
        repositories (list[Repository]): Records owned by the caller.
        event (FetchEvent): The event to apply.
        now (datetime.datetime | None): Timestamp for terminal events.

    Returns:
        Repository | None: The updated record, or None if it no longer exists.
    """
    repo = _find(repositories, event)
    if repo is None:
        return None

    if isinstance(event, FetchStarted):
        repo.status = RepoStatus.FETCHING
    elif isinstance(event, FetchProgress):
        if (remote := repo.remote(event.remote)) is not None:
            remote.status = RemoteStatus.FETCHING
    elif isinstance(event, TERMINAL_EVENTS):
        now = now or datetime.datetime.now()
        for remote in repo.remotes:
            if remote.status == RemoteStatus.FETCHING:
                remote.status = RemoteStatus.READY
        outcome = event.outcome
        if outcome is not None:
            repo.status = STATE_TO_STATUS.get(outcome.state, repo.status)
            _apply_outcome(repo, outcome)
        else:
            repo.status = RepoStatus.ERROR
        repo.last_fetch = now
    return repo
