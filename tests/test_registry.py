"""Tests for repository persistence."""

import datetime
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autofetch.config import Config
from git_autofetch.models import Remote, RemoteStatus, Repository, RepoStatus
from git_autofetch.registry import (
    build_repository,
    find_repository,
    load_repositories,
    refresh_divergence,
    refresh_registry,
    save_repositories,
)

requires_git = pytest.mark.skipif(
    shutil.which("git") is None, reason="git binary not available"
)


def test_round_trip_preserves_every_field(tmp_path: Path) -> None:
    registry = tmp_path / "repositories.json"
    repo = Repository(
        name="project",
        local_path=Path("/srv/project"),
        branch="develop",
        fetch_interval=15,
        enabled=False,
        last_fetch=datetime.datetime(2024, 5, 1, 12, 30, 5),
        status=RepoStatus.PARTIAL,
        remotes=[
            Remote(
                "origin",
                "git@example.com:team/project.git",
                last_fetch=datetime.datetime(2024, 5, 1, 12, 30),
                status=RemoteStatus.SUCCESS,
                commits_ahead=2,
                commits_behind=7,
            ),
            Remote(
                "mirror",
                "https://example.com/project.git",
                status=RemoteStatus.ERROR,
            ),
        ],
    )

    save_repositories([repo], registry)

    assert load_repositories(registry) == [repo]
    assert not registry.with_suffix(".tmp").exists()


def test_missing_and_empty_registries(tmp_path: Path) -> None:
    assert load_repositories(tmp_path / "missing.json") == []

    empty = tmp_path / "empty.json"
    empty.write_text("")
    assert load_repositories(empty) == []


def test_corrupt_registry_is_reported(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    registry = tmp_path / "repositories.json"
    registry.write_text("{not json")

    assert load_repositories(registry) == []
    assert "REGISTRY ERROR" in caplog.text


def test_legacy_url_and_defaults(tmp_path: Path) -> None:
    """Verifies older entries: a single `url`, no optional fields, unknown status."""
    registry = tmp_path / "repositories.json"
    registry.write_text(
        json.dumps(
            {
                "repositories": [
                    {
                        "name": "legacy",
                        "localPath": "/srv/legacy",
                        "url": "https://example.com/legacy.git",
                        "status": "Syncing",
                    },
                    {"localPath": "/srv/nameless"},
                ]
            }
        )
    )

    repos = load_repositories(registry)

    assert len(repos) == 1
    repo = repos[0]
    assert [(r.name, r.url) for r in repo.remotes] == [
        ("origin", "https://example.com/legacy.git")
    ]
    assert repo.branch == "main"
    assert repo.fetch_interval == 60
    assert repo.enabled is True
    assert repo.status == RepoStatus.READY
    assert repo.last_fetch is None


def test_save_failure_leaves_original_intact(
    tmp_path: Path, mocker: MagicMock
) -> None:
    registry = tmp_path / "repositories.json"
    original = Repository(name="a", local_path=Path("/srv/a"))
    save_repositories([original], registry)

    mocker.patch("git_autofetch.registry.os.replace", side_effect=OSError("disk full"))
    with pytest.raises(OSError):
        save_repositories([], registry)

    assert load_repositories(registry) == [original]
    assert not registry.with_suffix(".tmp").exists()


def test_find_repository_by_name_or_path(tmp_path: Path) -> None:
    repos = [
        Repository(name="alpha", local_path=tmp_path.resolve() / "alpha"),
        Repository(name="beta", local_path=tmp_path.resolve() / "beta"),
    ]
    (tmp_path / "beta").mkdir()

    assert find_repository(repos, "alpha") is repos[0]
    assert find_repository(repos, str(tmp_path / "beta")) is repos[1]
    assert find_repository(repos, "gamma") is None


@requires_git
def test_build_repository_reads_working_copy(
    work_repo: Path, origin_repo: Path
) -> None:
    config = Config()
    config.core.default_fetch_interval = 30

    repo = build_repository(work_repo, config)

    assert repo.name == "work"
    assert repo.local_path == work_repo.resolve()
    assert repo.branch == "main"
    assert repo.fetch_interval == 30
    assert [(r.name, r.url) for r in repo.remotes] == [("origin", str(origin_repo))]


@requires_git
def test_build_repository_detached_head_uses_default_branch(
    work_repo: Path, run_git: Callable
) -> None:
    run_git(work_repo, "checkout", "-q", "--detach")
    config = Config()
    config.core.default_branch = "trunk"

    assert build_repository(work_repo, config).branch == "trunk"


def test_build_repository_rejects_plain_directory(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Not a git repository"):
        build_repository(tmp_path, Config())


def test_top_level_array_registry_loads(tmp_path: Path) -> None:
    """Verifies a registry written as a bare array of entries still loads."""
    registry = tmp_path / "repositories.json"
    registry.write_text(
        json.dumps(
            [
                {
                    "name": "legacy",
                    "localPath": "/srv/legacy",
                    "url": "https://example.com/legacy.git",
                },
                "not an entry",
            ]
        )
    )

    repos = load_repositories(registry)

    assert [r.name for r in repos] == ["legacy"]
    assert [(r.name, r.url) for r in repos[0].remotes] == [
        ("origin", "https://example.com/legacy.git")
    ]


@pytest.mark.parametrize("document", ["42", '"repositories"', '{"repositories": 7}'])
def test_unexpected_registry_shape_is_reported(
    tmp_path: Path, caplog: pytest.LogCaptureFixture, document: str
) -> None:
    registry = tmp_path / "repositories.json"
    registry.write_text(document)

    assert load_repositories(registry) == []
    assert "REGISTRY ERROR" in caplog.text


@requires_git
def test_refresh_divergence_counts_local_commits(
    tmp_path: Path, work_repo: Path, commit: Callable
) -> None:
    """Verifies counts are recomputed from refs on disk without fetching."""
    commit(work_repo, "local work")
    registry = tmp_path / "repositories.json"
    record = Repository(
        name="work",
        local_path=work_repo,
        remotes=[Remote("origin", "unused", commits_behind=4)],
    )
    missing = Repository(
        name="gone",
        local_path=tmp_path / "gone",
        remotes=[Remote("origin", "unused", commits_ahead=9)],
    )
    save_repositories([record, missing], registry)

    assert refresh_registry(registry) == ["work"]

    work, gone = load_repositories(registry)
    assert (work.remotes[0].commits_ahead, work.remotes[0].commits_behind) == (1, 0)
    assert gone.remotes[0].commits_ahead == 9


@requires_git
def test_refresh_without_changes_does_not_rewrite(
    tmp_path: Path, work_repo: Path, mocker: MagicMock
) -> None:
    registry = tmp_path / "repositories.json"
    save_repositories(
        [Repository(name="work", local_path=work_repo, remotes=[Remote("origin", "")])],
        registry,
    )
    save = mocker.patch("git_autofetch.registry.save_repositories")

    assert refresh_divergence(load_repositories(registry)) == []
    assert refresh_registry(registry) == []
    save.assert_not_called()
