"""SSH credential resolution for background fetches.

Resolution is deterministic and never interactive: the SSH agent is asked
first, then a fixed list of private keys under ~/.ssh. If neither works the
fetch fails with `AuthFailedError` instead of prompting.
"""

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from enum import IntFlag
from pathlib import Path
from urllib.parse import urlsplit

from .constants import APP_NAME, SSH_KEY_NAMES
from .errors import AuthFailedError

logger = logging.getLogger(APP_NAME)

_SSH_SCHEMES = {"ssh", "git+ssh", "ssh+git"}

# scp-like syntax: [user@]host:path, where host is not a Windows drive letter.
_SCP_RE = re.compile(r"^(?:(?P<user>[^@/:]+)@)?(?P<host>[^@/:]{2,}):(?P<path>.*)$")


class CredentialType(IntFlag):
    """Credential kinds a server may accept (bit values follow libgit2)."""

    USERPASS_PLAINTEXT = 1 << 0
    SSH_KEY = 1 << 1
    SSH_CUSTOM = 1 << 2
    DEFAULT = 1 << 3
    SSH_INTERACTIVE = 1 << 4
    USERNAME = 1 << 5
    SSH_MEMORY = 1 << 6


@dataclass(frozen=True)
class SSHCredential:
    """A resolved SSH identity.

    Attributes:
        username (str | None): The login name supplied by the URL, if any.
        key_path (Path | None): Private key file, or None for the SSH agent.
    """

    username: str | None
    key_path: Path | None = None

    @property
    def from_agent(self) -> bool:
        return self.key_path is None

    def ssh_command(self, connect_timeout: int | None = None) -> str:
        """Builds the non-interactive `ssh` invocation git should use.

        Args:
            connect_timeout (int | None): Seconds passed as ssh ConnectTimeout.

        Returns:
            str: A value suitable for GIT_SSH_COMMAND.
        """
        parts = ["ssh", "-o", "BatchMode=yes"]
        if connect_timeout:
            parts += ["-o", f"ConnectTimeout={connect_timeout}"]
        if self.key_path is not None:
            parts += ["-i", str(self.key_path), "-o", "IdentitiesOnly=yes"]
        return shlex.join(parts)


def parse_ssh_url(url: str) -> tuple[bool, str | None]:
    """Determines whether a remote URL uses the SSH transport.

    Args:
        url (str): The remote URL.

    Returns:
        tuple[bool, str | None]: Whether SSH is used, and the username hint
        embedded in the URL (e.g. 'git' for git@github.com:owner/repo.git).
    """
    if "://" in url:
        parts = urlsplit(url)
        if parts.scheme.lower() in _SSH_SCHEMES:
            return True, parts.username
        return False, None

    if match := _SCP_RE.match(url):
        return True, match.group("user")
    return False, None


class CredentialResolver:
    """Produces credentials for remote URLs without ever prompting.

    Attributes:
        ssh_dir (Path): Directory searched for well-known private keys.
        key_names (list[str]): Key file names tried in order.
    """

    def __init__(
        self, ssh_dir: Path | None = None, key_names: list[str] | None = None
    ):
        self.ssh_dir = ssh_dir if ssh_dir is not None else Path.home() / ".ssh"
        self.key_names = list(key_names if key_names is not None else SSH_KEY_NAMES)

    def agent_has_identity(self) -> bool:
        """Asks the running SSH agent whether it holds at least one identity.

        Returns:
            bool: True if SSH_AUTH_SOCK is set and `ssh-add -l` lists a key.
        """
        if not os.environ.get("SSH_AUTH_SOCK"):
            return False
        try:
            res = subprocess.run(
                ["ssh-add", "-l"], capture_output=True, text=True, timeout=2
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"SSH agent query failed: {e}")
            return False
        return res.returncode == 0

    def resolve(
        self, url: str, username_from_url: str | None, allowed_types: CredentialType
    ) -> SSHCredential:
        """Resolves one credential for `url`.

        Args:
            url (str): The remote URL being contacted.
            username_from_url (str | None): The username hint from the URL.
            allowed_types (CredentialType): Credential kinds the server accepts.

        Returns:
            SSHCredential: The agent identity or the first usable key file.

        Raises:
            AuthFailedError: If SSH keys are not accepted or none is usable.
        """
        logger.debug(
            f"SSH authentication requested for {url} "
            f"(user: {username_from_url}, allowed types: {int(allowed_types)})"
        )

        if allowed_types & CredentialType.SSH_KEY:
            if self.agent_has_identity():
                logger.debug("Using SSH key from SSH agent")
                return SSHCredential(username_from_url)

            for name in self.key_names:
                key_path = self.ssh_dir / name
                if key_path.is_file() and os.access(key_path, os.R_OK):
                    logger.debug(f"Using SSH key: {key_path}")
                    return SSHCredential(username_from_url, key_path)

        if allowed_types & CredentialType.USERPASS_PLAINTEXT:
            logger.debug("Username/password is not supported for SSH URLs")

        raise AuthFailedError(url, "No suitable authentication method found")

    def environment_for(
        self, url: str, connect_timeout: int | None = None, base_env: dict | None = None
    ) -> dict[str, str]:
        """Builds the environment for a non-interactive fetch of `url`.

        Args:
            url (str): The remote URL.
            connect_timeout (int | None): Seconds for the SSH connect phase.
            base_env (dict | None): Environment to start from. Defaults to
                                    the current process environment.

        Returns:
            dict[str, str]: The environment, with GIT_SSH_COMMAND set for SSH URLs.

        Raises:
            AuthFailedError: If the URL uses SSH and no credential resolves.
        """
        env = dict(os.environ if base_env is None else base_env)
        env["GIT_TERMINAL_PROMPT"] = "0"

        is_ssh, username = parse_ssh_url(url)
        if is_ssh:
            credential = self.resolve(url, username, CredentialType.SSH_KEY)
            env["GIT_SSH_COMMAND"] = credential.ssh_command(connect_timeout)
        return env
