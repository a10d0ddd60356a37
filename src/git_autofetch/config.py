import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_FETCH_INTERVAL,
    MAX_FETCH_INTERVAL,
    MIN_FETCH_INTERVAL,
)

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


# Inclusive bounds for keys that operators are allowed to tune.
_RANGES: dict[str, tuple[int, int]] = {
    "default_fetch_interval": (MIN_FETCH_INTERVAL, MAX_FETCH_INTERVAL),
    "scan_interval": (60, 86400),
    "operation": (10, 3600),
    "connection": (1, 60),
}


@dataclass
class CoreConfig:
    """Defaults applied to newly registered repositories.

    Attributes:
        default_branch (str): Branch tracked when none can be detected.
        default_fetch_interval (int): Minutes between fetches of one repository.
    """

    default_branch: str = DEFAULT_BRANCH
    default_fetch_interval: int = DEFAULT_FETCH_INTERVAL


@dataclass
class DaemonConfig:
    """Daemon operational settings.

    Attributes:
        scan_interval (int): Seconds between scheduler ticks (1 minute to 1 day).
        auto_fetch (bool): Whether ticks select and fetch due repositories.
    """

    scan_interval: int = 60
    auto_fetch: bool = True


@dataclass
class TimeoutsConfig:
    """Fetch ceilings, read once at the start of every fetch attempt.

    Attributes:
        operation (int): Seconds allowed for all remotes of one repository.
        connection (int): Seconds allowed for a single remote's network fetch.
    """

    operation: int = 300
    connection: int = 5


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Registration defaults.
        daemon (DaemonConfig): Daemon behavior settings.
        timeouts (TimeoutsConfig): Fetch timeouts.
        limits (LimitsConfig): Resource limits.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    # Cache for the base global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls) -> "Config":
        """Loads configuration from defaults and the global config file.

        Returns:
            Config: The fully merged configuration object. Sections are copies,
            so callers may mutate them without touching the cache.
        """
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        cached = cls._global_cache
        return cls(
            core=replace(cached.core),
            daemon=replace(cached.daemon),
            timeouts=replace(cached.timeouts),
            limits=replace(cached.limits),
        )

    @classmethod
    def reload(cls) -> "Config":
        """Discards the cached global config and reads it from disk again."""
        cls._global_cache = None
        return cls.load()

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if not data:
                return

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "daemon" in data:
                self.daemon = self._update_dataclass(
                    "daemon", self.daemon, data["daemon"]
                )
            if "timeouts" in data:
                self.timeouts = self._update_dataclass(
                    "timeouts", self.timeouts, data["timeouts"]
                )
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys, formats and ranges."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(invalid_keys)}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    value = parse_size(v)
                elif k in ["scan_interval", "operation", "connection"]:
                    value = parse_time(v)
                elif k == "auto_fetch" and not isinstance(v, bool):
                    raise ValueError(f"Expected true/false, got '{v}'")
                else:
                    value = v

                if k in _RANGES:
                    low, high = _RANGES[k]
                    if not isinstance(value, int) or not low <= value <= high:
                        raise ValueError(f"'{v}' is outside {low}..{high}")

                filtered_updates[k] = value
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)
