import os
from pathlib import Path

"""Global constants and configuration path definitions for git-autofetch.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the fixed defaults used by the fetch engine.
"""

# --- Identity ---
APP_NAME = "git-autofetch"
"""str: The human-readable application name."""

APP_LABEL = "io.github.git-autofetch"
"""str: The reverse-DNS style application identifier."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-autofetch"
"""Path: The directory for runtime state data (logs, registry)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

REGISTRY_FILE = STATE_DIR / "repositories.json"
"""Path: The JSON file storing the registered repositories and their remotes."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-autofetch"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Fetch Defaults ---
DEFAULT_BRANCH = "main"
"""str: The branch tracked when a repository does not name one."""

DEFAULT_FETCH_INTERVAL = 60
"""int: Minutes between scheduled fetches of a single repository."""

MIN_FETCH_INTERVAL = 1
MAX_FETCH_INTERVAL = 1440
"""int: Bounds (minutes) for a repository's own fetch interval."""

SSH_KEY_NAMES = ["id_rsa", "id_ed25519", "id_ecdsa", "id_dsa"]
"""
list[str]: Private key file names tried, in order, under ~/.ssh when the
SSH agent has no usable identity.
"""

SSH_AUTH_FAILURE_MARKERS = [
    "Permission denied",
    "Authentication failed",
    "Host key verification failed",
    "could not read Username",
]
"""list[str]: Fragments of git/ssh stderr that indicate rejected credentials."""
