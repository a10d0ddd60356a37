import atexit
import logging
import os
import queue
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE, REGISTRY_FILE
from .events import (
    FetchErrored,
    FetchEvent,
    FetchFinished,
    FetchProgress,
    FetchStarted,
    apply_event,
    is_terminal,
)
from .models import FetchState, Repository
from .registry import load_repositories, refresh_registry, save_repositories
from .scheduler import FetchScheduler

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

# Upper bound for a single wait on the event queue, so signals are noticed.
_POLL_SECONDS = 1.0


def setup_logging(interactive: bool, config: Config | None = None) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
        config (Config | None): Supplies the log rotation size.
    """
    config = config or Config.load()
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        # In daemon mode, rotate logs to file.
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=config.limits.max_log_size,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def read_pid(pid_file: Path = PID_FILE) -> int | None:
    """Returns the PID of a running daemon, or None if none is alive."""
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return None
    return pid


def log_event(event: FetchEvent) -> None:
    """Writes one lifecycle event to the application log."""
    name = event.repository
    if isinstance(event, FetchStarted):
        logger.info(f"STARTED {name}")
    elif isinstance(event, FetchProgress):
        logger.debug(f"PROGRESS {name}: {event.remote} ({event.percent}%)")
    elif isinstance(event, FetchFinished):
        if event.success:
            logger.info(f"SUCCESS {name}: {event.message}")
        elif event.outcome.state == FetchState.CANCELLED:
            logger.info(f"CANCELLED {name}: {event.message}")
        else:
            logger.warning(f"PARTIAL {name}: {event.message}")
    elif isinstance(event, FetchErrored):
        logger.error(f"FETCH ERROR {name}: {event.message}")


def handle_event(
    event: FetchEvent, registry_path: Path = REGISTRY_FILE
) -> Repository | None:
    """Logs an event and folds it into the persisted registry.

    The registry is re-read for every event so edits made by the
    CLI while a fetch is running are not overwritten.

    Returns:
        Repository | None: The updated record, or None if nothing was stored.
    """
    log_event(event)
    repositories = load_repositories(registry_path)
    repo = apply_event(repositories, event)
    if repo is None:
        logger.debug(f"{event.repository} is no longer registered; event dropped")
        return None
    try:
        save_repositories(repositories, registry_path)
    except OSError:
        # Already logged; the next event retries the write.
        return None
    return repo


def log_config_changes(old: Config, new: Config) -> None:
    """Logs every operator-visible setting that differs between two configs."""
    if old.timeouts.operation != new.timeouts.operation:
        logger.info(
            f"CONFIG: Operation timeout changed from {old.timeouts.operation}s "
            f"to {new.timeouts.operation}s"
        )
    if old.timeouts.connection != new.timeouts.connection:
        logger.info(
            f"CONFIG: Connection timeout changed from {old.timeouts.connection}s "
            f"to {new.timeouts.connection}s"
        )
    if old.daemon.scan_interval != new.daemon.scan_interval:
        logger.info(
            f"CONFIG: Scan interval changed from {old.daemon.scan_interval}s "
            f"to {new.daemon.scan_interval}s"
        )
    if old.daemon.auto_fetch != new.daemon.auto_fetch:
        state = "enabled" if new.daemon.auto_fetch else "disabled"
        logger.info(f"CONFIG: Auto-fetch {state}")


def tick(
    scheduler: FetchScheduler, config: Config, registry_path: Path = REGISTRY_FILE
) -> Config:
    """Runs one scheduler tick.

    Steps:
    1. Re-reads the configuration and applies timeout changes to the next attempt.
    2. If auto-fetch is on, queues every repository whose interval has elapsed.

    Returns:
        Config: The configuration now in effect.
    """
    new_config = Config.reload()
    log_config_changes(config, new_config)
    scheduler.update_timeouts(new_config.timeouts)

    if not new_config.daemon.auto_fetch:
        logger.debug("Auto-fetch disabled; tick skipped")
        return new_config

    queued = scheduler.submit_due(load_repositories(registry_path))
    if queued:
        logger.info(f"SCHEDULED: {', '.join(queued)}")
    return new_config


def _drain(scheduler: FetchScheduler, registry_path: Path) -> None:
    while True:
        try:
            event = scheduler.events.get_nowait()
        except queue.Empty:
            return
        handle_event(event, registry_path)


def run(
    registry_path: Path = REGISTRY_FILE,
    stop: threading.Event | None = None,
    scheduler: FetchScheduler | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """The daemon loop.

    Refreshes ahead/behind counts from local refs once at start, then waits
    on the event queue and persists every event. Every `scan_interval` seconds
    it reloads the configuration and queues due repositories.

    Args:
        registry_path (Path, optional): The registry file.
        stop (threading.Event | None): Ends the loop when set. SIGTERM and
                                       SIGINT set it when running on the main
                                       thread.
        scheduler (FetchScheduler | None): The worker; created if omitted.
        clock (Callable[[], float]): Monotonic clock in seconds.
    """
    stop = stop or threading.Event()
    config = Config.load()
    scheduler = scheduler or FetchScheduler(config.timeouts)

    def stop_handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}; shutting down")
        stop.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, stop_handler)
        signal.signal(signal.SIGINT, stop_handler)

    try:
        refresh_registry(registry_path)
    except OSError:
        logger.warning("Divergence refresh could not be saved; continuing")

    scheduler.start()
    logger.info(
        f"Daemon started (scan every {config.daemon.scan_interval}s, "
        f"auto-fetch {'on' if config.daemon.auto_fetch else 'off'})"
    )

    next_tick = clock()
    try:
        while not stop.is_set():
            if clock() >= next_tick:
                try:
                    config = tick(scheduler, config, registry_path)
                except Exception:
                    logger.exception("TICK ERROR")
                next_tick = clock() + config.daemon.scan_interval

            wait = min(_POLL_SECONDS, max(0.0, next_tick - clock()))
            try:
                event = scheduler.events.get(timeout=wait)
            except queue.Empty:
                continue
            handle_event(event, registry_path)
    finally:
        scheduler.shutdown(timeout=config.timeouts.connection + 1)
        _drain(scheduler, registry_path)
        logger.info("Daemon stopped")


def run_once(
    repositories: Iterable[Repository],
    registry_path: Path = REGISTRY_FILE,
    on_event: Callable[[FetchEvent], None] | None = None,
    scheduler: FetchScheduler | None = None,
) -> list[FetchEvent]:
    """Fetches the given repositories in the foreground.

    Every request is manual. Events are persisted as they arrive and the call
    returns once each queued repository has produced its terminal event.

    Args:
        repositories (Iterable[Repository]): The repositories to fetch.
        registry_path (Path, optional): The registry file.
        on_event (Callable | None): Receives every event after it is stored.
        scheduler (FetchScheduler | None): The worker; created if omitted.

    Returns:
        list[FetchEvent]: The terminal event of every queued repository.

    Raises:
        FetchInProgressError: If the same repository is requested twice.
    """
    scheduler = scheduler or FetchScheduler(Config.load().timeouts)
    queued = [repo for repo in repositories if scheduler.submit(repo, manual=True)]
    if not queued:
        return []

    scheduler.start()
    results: list[FetchEvent] = []
    try:
        while len(results) < len(queued):
            event = scheduler.events.get()
            handle_event(event, registry_path)
            if on_event is not None:
                on_event(event)
            if is_terminal(event):
                results.append(event)
    finally:
        scheduler.shutdown(timeout=scheduler.timeouts.connection + 1)
        _drain(scheduler, registry_path)
    return results


def main() -> None:
    """Entry point for the background daemon."""
    config = Config.load()
    setup_logging(interactive=False, config=config)

    if (pid := read_pid()) is not None and pid != os.getpid():
        logger.error(f"Daemon already running (PID {pid})")
        sys.exit(1)

    # PID File Management.
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))

        # Ensure cleanup on exit.
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")

    run()


if __name__ == "__main__":
    main()
