"""Exception hierarchy for assistant-log-watcher.

Only path, configuration and transport failures are meant to reach callers.
Parse failures are absorbed where they happen (a malformed file reads as an
empty record list, an unparsable tool payload drops a single record).
"""

from __future__ import annotations

__all__ = [
    "LogWatcherError",
    "WatchError",
    "PathError",
    "PathInaccessible",
    "ReadError",
    "ParseError",
    "TransportError",
    "ConfigError",
]


class LogWatcherError(Exception):
    """Base class for all errors raised by this package."""


class WatchError(LogWatcherError):
    """Raised when a watch session cannot be registered."""


class PathError(WatchError):
    """A configured path is missing, inaccessible or invalid."""


class PathInaccessible(PathError):
    """One or more required files could not be stat'd.

    Attributes:
        missing (list[str]): The files that failed the check.
    """

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class ReadError(PathError):
    """A file could not be read."""


class ParseError(LogWatcherError):
    """File content or an embedded payload is not valid JSON."""


class TransportError(LogWatcherError):
    """The notification transport failed to connect or dropped."""


class ConfigError(LogWatcherError, ValueError):
    """Required configuration is missing or invalid."""
