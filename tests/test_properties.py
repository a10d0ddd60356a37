import datetime
from pathlib import Path
from unittest.mock import patch

from hypothesis import given
from hypothesis import strategies as st

from git_autofetch.config import TimeoutsConfig, parse_time
from git_autofetch.coordinator import fetch_repository
from git_autofetch.errors import RemoteFetchError
from git_autofetch.models import (
    FetchState,
    RemoteSnapshot,
    Repository,
    RepositorySnapshot,
)

times = st.datetimes(
    min_value=datetime.datetime(2000, 1, 1), max_value=datetime.datetime(2100, 1, 1)
)
remote_names = st.lists(
    st.from_regex(r"[a-z][a-z0-9_-]{0,11}", fullmatch=True),
    min_size=1,
    max_size=8,
    unique=True,
)


@given(
    last_fetch=st.none() | times,
    now=times,
    interval=st.integers(min_value=1, max_value=1440),
    enabled=st.booleans(),
)
def test_is_due_matches_interval(
    last_fetch: datetime.datetime | None,
    now: datetime.datetime,
    interval: int,
    enabled: bool,
) -> None:
    """
    Property: A repository is due exactly when it is enabled and either has
    never been fetched or its own interval has fully elapsed.
    """
    repo = Repository(
        name="r",
        local_path=Path("/srv/r"),
        fetch_interval=interval,
        enabled=enabled,
        last_fetch=last_fetch,
    )

    if not enabled:
        expected = False
    elif last_fetch is None:
        expected = True
    else:
        expected = now - last_fetch >= datetime.timedelta(minutes=interval)

    assert repo.is_due(now) is expected


@given(names=remote_names, data=st.data())
def test_outcome_accounts_for_every_remote(
    names: list[str], data: st.DataObject
) -> None:
    """
    Property: Each remote is attempted once and in order, progress never goes
    backwards, and the failure message names each failed remote exactly once.
    """
    failing = data.draw(st.sets(st.sampled_from(names)))
    attempted: list[str] = []
    progress: list[int] = []

    def fake_fetch(repo: object, remote: RemoteSnapshot, **kwargs: object) -> None:
        attempted.append(remote.name)
        if remote.name in failing:
            raise RemoteFetchError(remote.name, "Git error: refused")

    snapshot = RepositorySnapshot(
        name="project",
        local_path=Path("/srv/project"),
        branch="main",
        remotes=tuple(RemoteSnapshot(n, f"https://example.com/{n}.git") for n in names),
    )

    with (
        patch("git_autofetch.coordinator.GitRepo") as mock_cls,
        patch("git_autofetch.coordinator.fetch_remote", side_effect=fake_fetch),
        patch("git_autofetch.coordinator.compute_divergence", return_value=(0, 0)),
    ):
        mock_cls.return_value.is_valid.return_value = True
        outcome = fetch_repository(
            snapshot,
            TimeoutsConfig(),
            on_progress=lambda _remote, pct: progress.append(pct),
        )

    assert attempted == names
    assert progress == sorted(progress)
    assert all(0 <= p < 100 for p in progress)
    assert [r.name for r in outcome.remotes] == names

    if not failing:
        assert outcome.state == FetchState.ALL_SUCCEEDED
        return

    assert outcome.state == FetchState.PARTIAL_FAILURE
    listed = outcome.message.removeprefix("Some remotes failed: ").split(", ")
    assert listed == [n for n in names if n in failing]


@given(
    amount=st.integers(min_value=0, max_value=10_000),
    unit=st.sampled_from(["s", "sec", "m", "min", "h", "hr"]),
)
def test_parse_time_scales_units(amount: int, unit: str) -> None:
    """Property: Every accepted unit scales the number to whole seconds."""
    scale = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}[unit]

    assert parse_time(f"{amount}{unit}") == amount * scale
    assert parse_time(f"{amount} {unit}") == amount * scale
