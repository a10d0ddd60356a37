"""Exception hierarchy for the fetch engine.

Remote-level errors carry the `FailureKind` the coordinator records for the
remote; they never abort sibling remotes. Cancellation and the operation
timeout are outcome states rather than exceptions.
"""

from .models import FailureKind


class SyncError(Exception):
    """Base exception for the whole application."""


class RepoUnavailableError(SyncError):
    """The local path is not a valid, openable working copy."""


class FetchInProgressError(SyncError):
    """A fetch for this repository is already queued or running."""


# ── Remote-level failures ───────────────────────────────────────────────────


class RemoteError(SyncError):
    """A single remote failed; siblings continue."""

    kind: FailureKind = FailureKind.FETCH_FAILED

    def __init__(self, remote: str, detail: str = "") -> None:
        self.remote = remote
        self.detail = detail
        super().__init__(f"{remote}: {detail}" if detail else remote)


class RemoteCreateError(RemoteError):
    """The remote could not be materialized in the repository."""

    kind = FailureKind.REMOTE_CREATE_FAILED


class RemoteFetchError(RemoteError):
    """Network or protocol failure reported by git."""

    kind = FailureKind.FETCH_FAILED


class ConnectionTimeoutError(RemoteError):
    """The connection timeout elapsed before git returned.

    The git process is detached, not killed; no further result is expected
    on the path that raised this.
    """

    kind = FailureKind.CONNECTION_TIMEOUT


class AuthFailedError(RemoteError):
    """No acceptable credential could be resolved, or the server rejected it."""

    kind = FailureKind.AUTH_FAILED
