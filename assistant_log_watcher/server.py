"""Server-side facade tying the reader, the watch registry and the bus together.

:class:`LogWatchServer` exposes the operations a web front end would route to
(path validation with watch registration, message reads, the last-updated
marker and task folder listing) and hands out in-process transports for
clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from watchdog.observers import Observer

from assistant_log_watcher.bus import NotificationBus
from assistant_log_watcher.errors import WatchError
from assistant_log_watcher.models import ChangeEvent
from assistant_log_watcher.paths import validate_path_string
from assistant_log_watcher.reader import REQUIRED_FILES, LogReader, SubfolderResult, ValidationResult
from assistant_log_watcher.transport import LocalHub, LocalTransport
from assistant_log_watcher.watcher import DEFAULT_DEBOUNCE_SECONDS, WatchRegistry, WatchSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["LogWatchServer", "WatchResult"]


@dataclass
class WatchResult:
    """Outcome of :meth:`LogWatchServer.register_watch`.

    Attributes:
        success (bool): Whether a session is now watching the task folder.
        key (Optional[str]): The session key (also the bus topic).
        error (Optional[str]): Reason for failure.
        session (Optional[WatchSession]): Handle of the live session.
        files (List[str]): The watched files.
    """

    success: bool
    key: Optional[str] = None
    error: Optional[str] = None
    session: Optional[WatchSession] = None
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}


class LogWatchServer:
    """Own the watch registry, the notification bus and the client hub.

    Attributes:
        reader (LogReader): Filesystem collaborator.
        bus (NotificationBus): Topic-scoped fan-out.
        registry (WatchRegistry): Live watch sessions.
        hub (LocalHub): Accepts in-process client transports.
    """

    def __init__(
        self,
        reader: Optional[LogReader] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.reader = reader or LogReader()
        self.bus = NotificationBus()
        self.registry = WatchRegistry(
            bus=self.bus, debounce_seconds=debounce_seconds, observer_factory=observer_factory
        )
        self.hub = LocalHub(self.bus)

    def connect_transport(self) -> LocalTransport:
        """Return a new, not yet opened, transport to this server."""
        return LocalTransport(self.hub)

    def register_watch(
        self,
        base_path: Optional[str],
        task_folder: Optional[str],
        required_files: Sequence[str] = REQUIRED_FILES,
    ) -> WatchResult:
        """Validate a task folder and (re)start watching its files.

        Every required file is checked before any existing session for the
        same key is replaced.
        """
        for value in (base_path, task_folder):
            if not value:
                continue
            ok, reason = validate_path_string(value)
            if not ok:
                logger.error("Rejected path %r: %s", value, reason)
                return WatchResult(False, error=reason)

        validation = self.reader.validate(base_path, task_folder, required_files)
        if not validation.success:
            return WatchResult(False, key=validation.key, error=validation.error, files=validation.files)

        try:
            session = self.registry.register(validation.key, validation.files)
        except WatchError as e:
            logger.error("Failed to watch %s: %s", validation.key, e)
            return WatchResult(False, key=validation.key, error=str(e), files=validation.files)

        logger.info("Started watching %s", validation.key)
        return WatchResult(True, key=validation.key, session=session, files=validation.files)

    def validate_path(self, base_path: Optional[str], task_folder: Optional[str]) -> ValidationResult:
        """Path-validator collaborator for clients: validate and start watching."""
        result = self.register_watch(base_path, task_folder)
        return ValidationResult(result.success, error=result.error, key=result.key, files=result.files)

    def read_messages(self, base_path: str, task_folder: str, source: str, strict: bool = False) -> List[Any]:
        return self.reader.read_messages(base_path, task_folder, source, strict=strict)

    def read_last_updated(self, base_path: str, task_folder: str) -> str:
        return self.reader.read_last_updated(base_path, task_folder)

    def get_subfolders(self, path: Optional[str]) -> SubfolderResult:
        return self.reader.list_subfolders(path)

    def on_change(self, key: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self.registry.on_change(key, callback)

    def unwatch(self, key: str) -> bool:
        return self.registry.close(key)

    def shutdown(self) -> None:
        """Stop every session and sever every client connection."""
        logger.info("Shutting down log watch server (%d sessions)", len(self.registry))
        self.registry.close_all()
        self.hub.available = False
        self.hub.drop_all("server shutting down")

    def __repr__(self) -> str:
        return f"<LogWatchServer sessions={len(self.registry)} hub={self.hub!r}>"
