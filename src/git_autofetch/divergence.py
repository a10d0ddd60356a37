import logging

from .constants import APP_NAME
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)


def _resolve_first(repo: GitRepo, *refs: str) -> str | None:
    """Returns the commit of the first reference in `refs` that resolves."""
    for ref in refs:
        if oid := repo.resolve_commit(ref):
            return oid
    return None


def compute_divergence(repo: GitRepo, remote_name: str, branch: str) -> tuple[int, int]:
    """Counts how far the local branch and a remote-tracking branch have diverged.

    The local tip is `refs/heads/<branch>`, or HEAD if that branch is missing.
    The remote tip is `refs/remotes/<remote>/<branch>`, or the remote's HEAD.
    When either tip is unknown the divergence is unknown and reported as
    (0, 0) rather than raised.

    Args:
        repo (GitRepo): An open repository.
        remote_name (str): The remote whose tracking branch is compared.
        branch (str): The branch name on both sides.

    Returns:
        tuple[int, int]: (ahead, behind), both non-negative.
    """
    local = _resolve_first(repo, f"refs/heads/{branch}", "HEAD")
    if local is None:
        logger.debug(f"No local tip for '{branch}' in {repo.path.name}")
        return 0, 0

    remote = _resolve_first(
        repo,
        f"refs/remotes/{remote_name}/{branch}",
        f"refs/remotes/{remote_name}/HEAD",
    )
    if remote is None:
        logger.debug(f"No tracking tip for {remote_name}/{branch} in {repo.path.name}")
        return 0, 0

    if local == remote:
        return 0, 0

    try:
        ahead = repo.count_commits(push=local, hide=remote)
        behind = repo.count_commits(push=remote, hide=local)
    except Exception as e:
        logger.warning(
            f"Failed to count commits for {repo.path.name} {remote_name}/{branch}: {e}"
        )
        return 0, 0

    return max(ahead, 0), max(behind, 0)
