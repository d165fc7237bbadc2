"""Configuration management for assistant-log-watcher.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config
fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``LOG_WATCHER_BASE_PATH``: Directory holding the task folders.
    * ``LOG_WATCHER_TASK_FOLDER``: Task folder to follow (defaults to the newest).
    * ``LOG_WATCHER_LOG_FILE``: Path to the log file.
    * ``LOG_WATCHER_LOG_LEVEL``: Logging level.
    * ``LOG_WATCHER_WATCH_DEBOUNCE_SECONDS``: Server-side quiet period.
    * ``LOG_WATCHER_REFETCH_DEBOUNCE_SECONDS``: Client-side refetch quiet period.
    * ``LOG_WATCHER_MAX_RECONNECT_ATTEMPTS``: Reconnect budget.
    * ``LOG_WATCHER_RECONNECT_DELAY``: Base reconnect delay.
    * ``LOG_WATCHER_RECONNECT_DELAY_MAX``: Reconnect delay cap.
    * ``LOG_WATCHER_CACHE_SIZE``: Normalization cache capacity.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from assistant_log_watcher.errors import ConfigError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["APP_NAME", "Config", "ConfigError", "load_config"]

APP_NAME = "assistant-log-watcher"
ENV_PREFIX = "LOG_WATCHER_"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        base_path (Optional[str]): Absolute path of the directory holding task folders.
        task_folder (Optional[str]): Task folder name. None means "newest".
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        watch_debounce_seconds (float): Server-side quiet period. Defaults to 0.5.
        refetch_debounce_seconds (float): Client-side refetch quiet period. Defaults to 1.0.
        max_reconnect_attempts (int): Consecutive failures before giving up. Defaults to 5.
        reconnect_delay (float): Base reconnect delay in seconds. Defaults to 1.0.
        reconnect_delay_max (float): Reconnect delay cap in seconds. Defaults to 5.0.
        cache_size (int): Normalization cache capacity. Defaults to 1000.
    """

    base_path: Optional[str]
    task_folder: Optional[str]
    log_file: Optional[str]
    log_level: str
    watch_debounce_seconds: float
    refetch_debounce_seconds: float
    max_reconnect_attempts: int
    reconnect_delay: float
    reconnect_delay_max: float
    cache_size: int


DEFAULTS: Dict[str, Any] = {
    "base_path": None,
    "task_folder": None,
    "log_file": None,
    "log_level": "INFO",
    "watch_debounce_seconds": 0.5,
    "refetch_debounce_seconds": 1.0,
    "max_reconnect_attempts": 5,
    "reconnect_delay": 1.0,
    "reconnect_delay_max": 5.0,
    "cache_size": 1000,
}


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/assistant-log-watcher/config.ini` (Linux/macOS).
    3. `%APPDATA%\\assistant-log-watcher\\config.ini` (Windows).
    4. `~/.config/assistant-log-watcher/config.ini` (Fallback).
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), APP_NAME, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", APP_NAME, "config.ini"))
    return paths


def _validate_base_path(path_str: str) -> str:
    """Expand and resolve the base path; it must be an existing directory.

    Raises:
        ConfigError: If the path does not exist or is not a directory.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError as e:
        raise ConfigError(f"Base path not found: {path}") from e
    except (RuntimeError, OSError) as e:
        raise ConfigError(f"Error resolving base path {path}: {e}") from e
    if not resolved.is_dir():
        raise ConfigError(f"Base path is not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and make sure it can be appended to.

    Raises:
        ConfigError: If the parent directory is missing or the file is not writable.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        parent = path.parent.resolve(strict=True)
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ConfigError(f"Invalid log file path (parent directory not found): {path}") from e
    resolved = parent / path.name
    if resolved.exists() and not resolved.is_file():
        raise ConfigError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ConfigError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ConfigError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _cast(config_values: Dict[str, Any], key: str, kind: Callable[[Any], Any]) -> None:
    value = config_values[key]
    if value is None:
        return
    try:
        config_values[key] = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {kind.__name__} for {key}: {value}") from e


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes (e.g., 'base_path', 'cache_size').
            Values of None are ignored to allow lower-priority sources to take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ConfigError: If a numeric value is invalid, the base path is not a
            directory, the log file is not writable or the log level is unknown.

    Examples:
        >>> config = load_config({"cache_size": 50})
        >>> config.cache_size
        50
        >>> load_config({}).watch_debounce_seconds
        0.5
    """
    # 1. Defaults
    config_values: Dict[str, Any] = dict(DEFAULTS)

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if APP_NAME in parser:
                    for key, value in parser[APP_NAME].items():
                        if key not in DEFAULTS:
                            logger.warning(f"Ignoring unknown config key '{key}' in {path}")
                            continue
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    for config_key in DEFAULTS:
        val = os.getenv(ENV_PREFIX + config_key.upper())
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    for key in ("watch_debounce_seconds", "refetch_debounce_seconds", "reconnect_delay", "reconnect_delay_max"):
        _cast(config_values, key, float)
        if config_values[key] < 0:
            raise ConfigError(f"{key} must be non-negative, got {config_values[key]}")

    for key in ("max_reconnect_attempts", "cache_size"):
        _cast(config_values, key, int)
        if config_values[key] < 1:
            raise ConfigError(f"{key} must be positive, got {config_values[key]}")

    if config_values["reconnect_delay_max"] < config_values["reconnect_delay"]:
        raise ConfigError(
            f"reconnect_delay_max ({config_values['reconnect_delay_max']}) must not be less than "
            f"reconnect_delay ({config_values['reconnect_delay']})"
        )

    if config_values["base_path"]:
        config_values["base_path"] = _validate_base_path(str(config_values["base_path"]))
    else:
        config_values["base_path"] = None

    if not config_values["task_folder"]:
        config_values["task_folder"] = None

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    # Handle debug flag
    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    level = str(config_values["log_level"] or "INFO").upper()
    if not isinstance(getattr(logging, level, None), int):
        raise ConfigError(f"Invalid log level: {config_values['log_level']}")
    config_values["log_level"] = level

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
