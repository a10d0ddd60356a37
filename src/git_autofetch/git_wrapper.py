import logging
import subprocess
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This is the backend capability the fetch engine orchestrates: opening a
    working copy, managing named remotes, fetching, resolving references and
    walking ancestry. Instances are not shared between threads; the fetch
    worker opens its own handle per attempt.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.

        Raises:
            ValueError: If the specified path does not contain a .git entry.
        """
        self.path = path
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    def _run(
        self,
        args: list[str],
        capture: bool = True,
        env: dict | None = None,
        timeout: float | None = None,
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to capture and return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Used to inject the SSH
                                            command for fetches. Defaults to None.
            timeout (Optional[float], optional): Hard ceiling in seconds after
                                            which the git process is killed.
                                            Defaults to None (no ceiling).

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            RuntimeError: If the git command returns a non-zero exit code.
            TimeoutError: If the hard timeout elapsed and the process was killed.
        """
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=capture,
                text=True,
                check=True,
                env=env,
                timeout=timeout,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Git error: {(e.stderr or '').strip() or e}") from e
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"git {args[0]} killed after {timeout}s") from e

    def is_valid(self) -> bool:
        """Checks that git itself accepts the path as a working copy.

        Returns:
            bool: True if `git rev-parse --git-dir` succeeds.
        """
        try:
            self._run(["rev-parse", "--git-dir"])
            return True
        except Exception as e:
            logger.debug(f"Invalid repository at {self.path}: {e}")
            return False

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The name of the current branch (empty when HEAD is detached).
        """
        return self._run(["branch", "--show-current"])

    def list_remotes(self) -> list[str]:
        """Lists the names of the configured remotes.

        Returns:
            list[str]: Remote names in the order git reports them.
        """
        output = self._run(["remote"])
        return output.splitlines() if output else []

    def remote_url(self, name: str) -> str | None:
        """Looks up the fetch URL of a named remote.

        Args:
            name (str): The remote name (e.g., 'origin').

        Returns:
            Optional[str]: The URL, or None if the remote does not exist.
        """
        try:
            return self._run(["remote", "get-url", name]) or None
        except Exception as e:
            logger.debug(f"remote lookup failed for '{name}': {e}")
            return None

    def add_remote(self, name: str, url: str) -> None:
        """Creates a new named remote.

        Args:
            name (str): The remote name.
            url (str): The fetch URL.

        Raises:
            RuntimeError: If git refuses to create the remote.
        """
        self._run(["remote", "add", name, url])

    def fetch(
        self,
        remote: str,
        env: dict | None = None,
        download_tags: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Fetches a remote into its remote-tracking references.

        Args:
            remote (str): The remote name.
            env (Optional[dict], optional): Environment for the git process.
            download_tags (bool, optional): Whether tags are fetched. Defaults
                                            to False (`--no-tags`).
            timeout (Optional[float], optional): Hard ceiling for the process.
        """
        cmd = ["fetch", "--no-tags" if not download_tags else "--tags", remote]
        self._run(cmd, env=env, timeout=timeout)

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'master').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev]) or None
        except Exception as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def resolve_commit(self, ref: str) -> str | None:
        """Resolves a reference to the commit it ultimately points at.

        Symbolic references such as `refs/remotes/origin/HEAD` are followed.

        Args:
            ref (str): A fully qualified reference name or `HEAD`.

        Returns:
            Optional[str]: The commit SHA-1, or None if unresolvable.
        """
        return self.rev_parse(f"{ref}^{{commit}}")

    def count_commits(self, push: str, hide: str) -> int:
        """Counts commits reachable from `push` that are not reachable from `hide`.

        Args:
            push (str): The tip whose ancestry is walked.
            hide (str): The tip whose ancestry is excluded from the walk.

        Returns:
            int: The number of visited commits.

        Raises:
            RuntimeError: If git cannot walk the graph.
        """
        output = self._run(["rev-list", "--count", push, f"^{hide}"])
        return int(output) if output else 0
