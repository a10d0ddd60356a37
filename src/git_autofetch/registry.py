"""Persistence of the repository list.

The registry is a single JSON document. Writes are atomic (temp file, fsync,
rename) so a crash never leaves a half-written registry behind.
"""

import contextlib
import datetime
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from .config import Config
from .constants import APP_NAME, REGISTRY_FILE
from .divergence import compute_divergence
from .git_wrapper import GitRepo
from .models import Remote, RemoteStatus, Repository, RepoStatus

logger = logging.getLogger(APP_NAME)

E = TypeVar("E", bound=Enum)


def _to_iso(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime.datetime | None:
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Ignoring invalid timestamp in registry: {value!r}")
        return None


def _enum(cls: type[E], value: Any, default: E) -> E:
    try:
        return cls(value)
    except ValueError:
        return default


def _remote_to_dict(remote: Remote) -> dict[str, Any]:
    return {
        "name": remote.name,
        "url": remote.url,
        "lastFetch": _to_iso(remote.last_fetch),
        "status": remote.status.value,
        "commitsAhead": remote.commits_ahead,
        "commitsBehind": remote.commits_behind,
    }


def _remote_from_dict(data: dict[str, Any]) -> Remote:
    return Remote(
        name=data["name"],
        url=data.get("url", ""),
        last_fetch=_from_iso(data.get("lastFetch")),
        status=_enum(RemoteStatus, data.get("status"), RemoteStatus.READY),
        commits_ahead=int(data.get("commitsAhead", 0)),
        commits_behind=int(data.get("commitsBehind", 0)),
    )


def repository_to_dict(repo: Repository) -> dict[str, Any]:
    """Serializes a repository record, including its remotes."""
    return {
        "name": repo.name,
        "localPath": str(repo.local_path),
        "branch": repo.branch,
        "fetchInterval": repo.fetch_interval,
        "enabled": repo.enabled,
        "lastFetch": _to_iso(repo.last_fetch),
        "status": repo.status.value,
        "remotes": [_remote_to_dict(r) for r in repo.remotes],
    }


def repository_from_dict(data: dict[str, Any]) -> Repository:
    """Builds a repository record from its JSON form.

    Older registries stored a single `url` per repository; it is read as a
    remote named `origin` when no `remotes` list is present. Unknown status
    strings load as Ready.
    """
    remotes = [_remote_from_dict(r) for r in data.get("remotes", [])]
    if not remotes and data.get("url"):
        remotes = [Remote(name="origin", url=data["url"])]

    repo = Repository(
        name=data["name"],
        local_path=Path(data["localPath"]),
        remotes=remotes,
        last_fetch=_from_iso(data.get("lastFetch")),
        status=_enum(RepoStatus, data.get("status"), RepoStatus.READY),
    )
    if "branch" in data:
        repo.branch = data["branch"]
    if "fetchInterval" in data:
        repo.fetch_interval = int(data["fetchInterval"])
    if "enabled" in data:
        repo.enabled = bool(data["enabled"])
    return repo


def load_repositories(path: Path = REGISTRY_FILE) -> list[Repository]:
    """Reads every registered repository.

    Args:
        path (Path, optional): The registry file. Defaults to REGISTRY_FILE.

    Both the `{"repositories": [...]}` document and a bare top-level array of
    entries are accepted.

    Returns:
        list[Repository]: Records in registration order. Empty if the file is
        missing or unreadable; malformed entries are skipped with a warning.
    """
    if not path.exists():
        return []

    try:
        content = path.read_text().strip()
        if not content:
            return []
        data = json.loads(content)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"REGISTRY ERROR: Could not read {path}: {e}")
        return []

    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        entries = data.get("repositories", [])
    else:
        logger.error(
            f"REGISTRY ERROR: Unexpected {type(data).__name__} at top level of {path}"
        )
        return []

    if not isinstance(entries, list):
        logger.error(f"REGISTRY ERROR: 'repositories' in {path} is not a list")
        return []

    repos = []
    for entry in entries:
        try:
            repos.append(repository_from_dict(entry))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"REGISTRY: Skipping malformed entry {entry!r}: {e}")
    return repos


def save_repositories(
    repositories: list[Repository], path: Path = REGISTRY_FILE
) -> None:
    """Writes the registry atomically.

    Args:
        repositories (list[Repository]): The full list to persist.
        path (Path, optional): The registry file. Defaults to REGISTRY_FILE.

    Raises:
        OSError: If the registry could not be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_suffix(".tmp")
    data = {"repositories": [repository_to_dict(r) for r in repositories]}

    try:
        with open(tmp_file, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_file, path)
    except OSError as e:
        logger.error(f"REGISTRY ERROR: Could not save {path}: {e}")
        if tmp_file.exists():
            with contextlib.suppress(OSError):
                tmp_file.unlink()
        raise


def refresh_divergence(repositories: list[Repository]) -> list[str]:
    """Recomputes ahead/behind counts from the refs already on disk.

    Nothing is fetched. Repositories whose working copy cannot be opened are
    left untouched.

    Returns:
        list[str]: Names of the repositories whose counts changed.
    """
    changed = []
    for record in repositories:
        try:
            repo = GitRepo(record.local_path)
        except ValueError as e:
            logger.debug(f"Skipping divergence refresh for {record.name}: {e}")
            continue
        if not repo.is_valid():
            logger.debug(f"Skipping divergence refresh for {record.name}: not a repo")
            continue

        updated = False
        for remote in record.remotes:
            counts = compute_divergence(repo, remote.name, record.branch)
            if counts != (remote.commits_ahead, remote.commits_behind):
                remote.commits_ahead, remote.commits_behind = counts
                updated = True
        if updated:
            changed.append(record.name)
    return changed


def refresh_registry(path: Path = REGISTRY_FILE) -> list[str]:
    """Refreshes divergence for every registered repository and saves changes.

    Raises:
        OSError: If the updated registry could not be written.
    """
    repositories = load_repositories(path)
    changed = refresh_divergence(repositories)
    if changed:
        save_repositories(repositories, path)
        logger.info(f"REFRESHED divergence: {', '.join(changed)}")
    return changed


def find_repository(repositories: list[Repository], name: str) -> Repository | None:
    """Looks up a repository by name, or by path when `name` is a directory."""
    for repo in repositories:
        if repo.name == name:
            return repo
    candidate = Path(name).expanduser()
    if candidate.exists():
        resolved = candidate.resolve()
        for repo in repositories:
            if repo.local_path == resolved:
                return repo
    return None


def build_repository(path: Path, config: Config | None = None) -> Repository:
    """Creates a record for an existing working copy.

    The name is the directory name, the branch is the checked-out branch (or
    the configured default when HEAD is detached), and remotes are read from
    the repository itself.

    Args:
        path (Path): The working copy.
        config (Config | None): Supplies the default branch and interval.

    Returns:
        Repository: A new, enabled record that has never been fetched.

    Raises:
        ValueError: If `path` is not a git working copy.
    """
    config = config or Config.load()
    path = path.expanduser().resolve()
    repo = GitRepo(path)
    if not repo.is_valid():
        raise ValueError(f"Not a git repository: {path}")

    try:
        branch = repo.current_branch() or config.core.default_branch
    except RuntimeError as e:
        logger.debug(f"Could not detect branch for {path.name}: {e}")
        branch = config.core.default_branch

    remotes = []
    for name in repo.list_remotes():
        if url := repo.remote_url(name):
            remotes.append(Remote(name=name, url=url))

    return Repository(
        name=path.name,
        local_path=path,
        branch=branch,
        fetch_interval=config.core.default_fetch_interval,
        remotes=remotes,
    )
