"""git-autofetch: Scheduled background fetching for git repositories.

This package provides the fetch engine (credential resolution, per-remote
fetching with timeouts, divergence calculation, a single-flight scheduler),
the background daemon that drives it, and the command-line interface.
"""

from . import (
    cli,
    config,
    constants,
    coordinator,
    credentials,
    daemon,
    divergence,
    errors,
    events,
    fetcher,
    git_wrapper,
    models,
    registry,
    scheduler,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "coordinator",
    "credentials",
    "daemon",
    "divergence",
    "errors",
    "events",
    "fetcher",
    "git_wrapper",
    "models",
    "registry",
    "scheduler",
]
