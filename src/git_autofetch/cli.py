import argparse
import datetime
import logging
import os
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon
from .config import Config
from .constants import (
    APP_NAME,
    CONFIG_FILE,
    MAX_FETCH_INTERVAL,
    MIN_FETCH_INTERVAL,
    REGISTRY_FILE,
)
from .errors import FetchInProgressError
from .events import FetchErrored, FetchEvent, FetchFinished, FetchProgress
from .models import RemoteStatus, Repository, RepoStatus
from .registry import (
    build_repository,
    find_repository,
    load_repositories,
    refresh_registry,
    save_repositories,
)

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    RepoStatus.READY: "white",
    RepoStatus.FETCHING: "blue",
    RepoStatus.SUCCESS: "green",
    RepoStatus.PARTIAL: "yellow",
    RepoStatus.ERROR: "bold red",
    RepoStatus.TIMEOUT: "red",
    RepoStatus.CANCELLED: "dim",
    RepoStatus.UNAVAILABLE: "bold red",
}


def _interval(value: str) -> int:
    """argparse type for a fetch interval in minutes."""
    minutes = int(value)
    if not MIN_FETCH_INTERVAL <= minutes <= MAX_FETCH_INTERVAL:
        raise argparse.ArgumentTypeError(
            f"interval must be between {MIN_FETCH_INTERVAL} "
            f"and {MAX_FETCH_INTERVAL} minutes"
        )
    return minutes


def _format_time(value: datetime.datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "Never"


def _require(repos: list[Repository], name: str) -> Repository:
    """Looks up a registered repository or exits with an error."""
    repo = find_repository(repos, name)
    if repo is None:
        err_console.print(f"[bold red]Not registered:[/bold red] {name}")
        sys.exit(1)
    return repo


def open_config() -> None:
    """Opens the global configuration file in the system default editor."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# git-autofetch configuration\n\n"
                "[daemon]\n"
                '# scan_interval = "1m"\n'
                "# auto_fetch = true\n\n"
                "[timeouts]\n"
                '# operation = "5m"\n'
                '# connection = "5s"\n'
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        if sys.platform == "darwin":
            editor = "open"
        else:
            editor = "nano"

    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")

    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except Exception as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def add_repo(
    path: Path,
    interval: int | None = None,
    branch: str | None = None,
    registry_path: Path = REGISTRY_FILE,
) -> Repository | None:
    """Registers an existing working copy.

    Args:
        path (Path): The working copy to register.
        interval (int | None): Minutes between fetches. Defaults to the
                               configured default interval.
        branch (str | None): Branch used for ahead/behind. Defaults to the
                             checked-out branch.
        registry_path (Path, optional): The registry file.

    Returns:
        Repository | None: The new record, or None if it was already registered.
    """
    repos = load_repositories(registry_path)

    try:
        repo = build_repository(path)
    except ValueError as e:
        err_console.print(f"[bold red]Cannot register:[/bold red] {e}")
        sys.exit(1)

    if any(r.key == repo.key for r in repos):
        console.print(
            f"Already registered: [cyan]{repo.local_path}[/cyan]", style="dim"
        )
        return None

    if interval is not None:
        repo.fetch_interval = interval
    if branch:
        repo.branch = branch

    repos.append(repo)
    save_repositories(repos, registry_path)

    remotes = ", ".join(r.name for r in repo.remotes) or "none"
    console.print(f"✔ Registered [cyan]{repo.name}[/cyan] (remotes: {remotes})")
    if not repo.remotes:
        console.print(
            "⚠ WARNING: No remotes configured. Fetches will be skipped.",
            style="bold yellow",
        )
    return repo


def remove_repo(name: str, registry_path: Path = REGISTRY_FILE) -> None:
    """Stops tracking a repository. The working copy is left untouched."""
    repos = load_repositories(registry_path)
    repo = _require(repos, name)
    repos.remove(repo)
    save_repositories(repos, registry_path)
    console.print(f"✔ Unregistered: [cyan]{repo.name}[/cyan]", style="green")


def set_enabled(name: str, enabled: bool, registry_path: Path = REGISTRY_FILE) -> None:
    """Includes or excludes a repository from scheduled and "fetch all" runs."""
    repos = load_repositories(registry_path)
    repo = _require(repos, name)
    repo.enabled = enabled
    save_repositories(repos, registry_path)
    if enabled:
        console.print(f"{repo.name}: automatic fetching enabled.", style="bold green")
    else:
        console.print(f"{repo.name}: automatic fetching disabled.", style="bold yellow")


def _remote_summary(repo: Repository) -> str:
    parts = []
    for remote in repo.remotes:
        if remote.status == RemoteStatus.ERROR:
            parts.append(f"[red]{remote.name} ✘[/red]")
        elif remote.status == RemoteStatus.FETCHING:
            parts.append(f"[blue]{remote.name} (fetching)[/blue]")
        elif remote.status == RemoteStatus.SUCCESS or (
            remote.commits_ahead or remote.commits_behind
        ):
            parts.append(
                f"{remote.name} [green]+{remote.commits_ahead}[/green]"
                f"/[yellow]-{remote.commits_behind}[/yellow]"
            )
        else:
            parts.append(f"[dim]{remote.name}[/dim]")
    return ", ".join(parts) or "[dim]none[/dim]"


def list_repos(refresh: bool = False, registry_path: Path = REGISTRY_FILE) -> None:
    """Lists all registered repositories with their last fetch results.

    With `refresh`, ahead/behind counts are first recomputed from local refs
    (no network access) and saved.
    """
    if refresh:
        try:
            refresh_registry(registry_path)
        except OSError as e:
            console.print(f"[yellow]Could not save refreshed counts:[/yellow] {e}")

    repos = load_repositories(registry_path)
    if not repos:
        console.print("[yellow]Registry is empty.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch")
    table.add_column("Every", justify="right")
    table.add_column("Status")
    table.add_column("Last Fetch", justify="right", style="dim")
    table.add_column("Remotes (ahead/behind)")

    for repo in repos:
        style = STATUS_STYLES.get(repo.status, "white")
        status = f"[{style}]{repo.status.value}[/{style}]"
        if not repo.enabled:
            status += " [dim](disabled)[/dim]"
        table.add_row(
            repo.name,
            repo.branch,
            f"{repo.fetch_interval}m",
            status,
            _format_time(repo.last_fetch),
            _remote_summary(repo),
        )

    console.print(table)

    if (pid := daemon.read_pid()) is not None:
        console.print(f"[dim]Daemon running (PID {pid}).[/dim]")
    else:
        console.print("[dim]Daemon stopped.[/dim]")


def fetch_repos(
    name: str | None = None,
    fetch_all: bool = False,
    registry_path: Path = REGISTRY_FILE,
) -> bool:
    """Fetches one repository, or every enabled one, in the foreground.

    Without a name or --all, the repository containing the current directory
    is fetched.

    Returns:
        bool: True if every requested fetch succeeded.
    """
    repos = load_repositories(registry_path)

    if fetch_all:
        targets = [r for r in repos if r.enabled]
        if not targets:
            console.print("[yellow]No enabled repositories.[/yellow]")
            return True
    else:
        targets = [_require(repos, name or str(Path.cwd()))]

    with console.status("[bold blue]Fetching...", spinner="dots") as status:

        def on_event(event: FetchEvent) -> None:
            if isinstance(event, FetchProgress):
                status.update(
                    f"[bold blue]Fetching {event.repository}: "
                    f"{event.remote} ({event.percent}%)..."
                )
            elif isinstance(event, FetchFinished) and event.success:
                console.print(
                    f"[bold green]SUCCESS:[/bold green] {event.repository}: "
                    f"{event.message}"
                )
            elif isinstance(event, FetchFinished):
                console.print(
                    f"[bold yellow]{event.outcome.state.name}:[/bold yellow] "
                    f"{event.repository}: {event.message}"
                )
            elif isinstance(event, FetchErrored):
                console.print(
                    f"[bold red]FETCH ERROR {event.repository}:[/bold red] "
                    f"{event.message}"
                )

        try:
            results = daemon.run_once(
                targets, on_event=on_event, registry_path=registry_path
            )
        except FetchInProgressError as e:
            err_console.print(f"[bold red]{e}[/bold red]")
            return False

    skipped = [r.name for r in targets if not r.remotes]
    for repo_name in skipped:
        console.print(f"[dim]SKIPPED {repo_name}: No remotes configured[/dim]")

    return all(isinstance(e, FetchFinished) and e.success for e in results)


def run_daemon() -> None:
    """Runs the scheduling loop in the foreground until interrupted."""
    daemon.setup_logging(interactive=True)
    console.print("[bold]git-autofetch[/bold] daemon running. Press Ctrl+C to stop.")
    daemon.run()


class AutofetchHelpFormatter(argparse.HelpFormatter):
    """Custom help formatter to streamline the CLI help output.

    This formatter intercepts the subparser action, strips the default
    metavar block, and groups the subcommands into logical categories
    with custom headers.
    """

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []

            groups = {
                "Repositories": ["add", "remove", "enable", "disable", "list"],
                "Fetching": ["fetch", "daemon"],
                "General": ["config", "help"],
            }

            subactions = list(self._iter_indented_subactions(action))

            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue

                # Inject the group header with standard argparse indentation
                parts.append(f"\n  {group_name}:\n")

                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    defaults = Config()

    table = Table(title="git-autofetch Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row(
        "core",
        "default_branch",
        "str",
        f'"{defaults.core.default_branch}"',
        "Branch compared against remotes when none is checked out.",
    )
    table.add_row(
        "",
        "default_fetch_interval",
        "int",
        str(defaults.core.default_fetch_interval),
        "Minutes between fetches for newly added repositories (1-1440).",
    )
    table.add_row(
        "daemon",
        "scan_interval",
        "int | str",
        '"1m"',
        "How often the daemon looks for due repositories (1m to 1 day).",
    )
    table.add_row(
        "",
        "auto_fetch",
        "bool",
        "true",
        "Fetch due repositories automatically on every scan.",
    )
    table.add_row(
        "timeouts",
        "operation",
        "int | str",
        '"5m"',
        "Ceiling for fetching all remotes of one repository (10s to 1hr).",
    )
    table.add_row(
        "",
        "connection",
        "int | str",
        '"5s"',
        "Ceiling for a single remote before it is reported as timed out (1-60s).",
    )
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max size for log files before rotation (e.g., '5mb', '1gb').",
    )

    console.print(table)


def main() -> None:
    """Main entry point for the git-autofetch CLI."""
    parser = argparse.ArgumentParser(
        prog="git-autofetch",
        usage=argparse.SUPPRESS,
        formatter_class=AutofetchHelpFormatter,
        add_help=False,  # Disable the default help injection
    )

    # Manually re-add the help flags but suppress them from the visual output
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help=argparse.SUPPRESS,
    )

    subparsers = parser.add_subparsers(dest="command")

    add_parser = subparsers.add_parser("add", help="Register a working copy")
    add_parser.add_argument(
        "path", nargs="?", default=".", help="Repository path (default: current)"
    )
    add_parser.add_argument(
        "--interval", type=_interval, help="Minutes between fetches (1-1440)"
    )
    add_parser.add_argument("--branch", help="Branch used for ahead/behind counts")

    remove_parser = subparsers.add_parser("remove", help="Stop tracking a repository")
    remove_parser.add_argument("name", help="Repository name or path")

    enable_parser = subparsers.add_parser("enable", help="Resume automatic fetching")
    enable_parser.add_argument("name", help="Repository name or path")
    disable_parser = subparsers.add_parser(
        "disable", help="Suspend automatic fetching"
    )
    disable_parser.add_argument("name", help="Repository name or path")

    list_parser = subparsers.add_parser(
        "list", help="List repositories and remote divergence"
    )
    list_parser.add_argument(
        "--refresh",
        "-r",
        action="store_true",
        help="Recount ahead/behind from local refs before listing",
    )

    fetch_parser = subparsers.add_parser("fetch", help="Fetch now (one-off)")
    fetch_parser.add_argument(
        "name", nargs="?", help="Repository name or path (default: current)"
    )
    fetch_parser.add_argument(
        "--all", "-a", action="store_true", help="Fetch every enabled repository"
    )

    subparsers.add_parser("daemon", help="Run the scheduler in the foreground")

    config_parser = subparsers.add_parser(
        "config", help="Open global config file or view options"
    )
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )

    subparsers.add_parser("help", help="Show this help message")

    args = parser.parse_args()

    if args.command == "add":
        add_repo(Path(args.path), interval=args.interval, branch=args.branch)
    elif args.command == "remove":
        remove_repo(args.name)
    elif args.command == "enable":
        set_enabled(args.name, True)
    elif args.command == "disable":
        set_enabled(args.name, False)
    elif args.command == "list":
        list_repos(refresh=args.refresh)
    elif args.command == "fetch":
        if args.name and args.all:
            parser.error("fetch takes a repository name or --all, not both")
        if not fetch_repos(args.name, fetch_all=args.all):
            sys.exit(1)
    elif args.command == "daemon":
        run_daemon()
    elif args.command == "config":
        if getattr(args, "list", False):
            show_config_reference()
        else:
            open_config()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
