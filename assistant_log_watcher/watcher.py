"""
File system watcher implementation using watchdog.

Responsibility:
    Own the set of live watch sessions, one per task folder, and turn bursts of
    raw file system events into single debounced ChangeEvents. Delivery of
    those events to subscribers is delegated to the `bus` module.

Design:
    - **Event-Driven**: Uses `watchdog` observers (no polling). Each session
      watches the directories holding its files non-recursively and filters
      events down to the watched file set.
    - **Debouncing**: A `DebounceTimer` per session coalesces rapid writes
      (atomic saves, appends) into one ChangeEvent for the last changed file.
    - **Validate Then Replace**: A registration stats every required file
      before the existing session for that key is torn down, so a failed
      registration never leaves the key unwatched.

Key Invariants:
    - The watcher never modifies the watched files (read-only).
    - A debounce fire with no pending change emits nothing.
    - No timer of a closed session fires afterwards.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from assistant_log_watcher.debounce import DebounceTimer
from assistant_log_watcher.errors import PathInaccessible, WatchError
from assistant_log_watcher.models import ChangeEvent
from assistant_log_watcher.paths import get_base_name, get_parent_path, normalize_path

if TYPE_CHECKING:
    from assistant_log_watcher.bus import NotificationBus

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DEFAULT_DEBOUNCE_SECONDS", "SessionEventHandler", "WatchRegistry", "WatchSession"]

DEFAULT_DEBOUNCE_SECONDS = 0.5

ChangeCallback = Callable[[ChangeEvent], None]


def _canonical(path: Any) -> str:
    return normalize_path(os.path.abspath(os.fsdecode(path)))


class SessionEventHandler(FileSystemEventHandler):
    """Forward watchdog events for watched files to a :class:`WatchSession`."""

    def __init__(self, session: WatchSession) -> None:
        super().__init__()
        self.session = session

    def _forward(self, raw_path: Any, event_type: str) -> None:
        try:
            file_path = _canonical(raw_path)
        except (OSError, ValueError) as e:
            logger.debug(f"Could not resolve event path {raw_path!r}: {e}")
            return
        if file_path not in self.session.watched_files:
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Processing event: {event_type} on {file_path}")
        self.session.notify_change(file_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, event.event_type)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, event.event_type)

    def on_moved(self, event: FileMovedEvent) -> None:
        """A file renamed onto a watched path counts as a change (atomic save)."""
        if not event.is_directory:
            self._forward(event.dest_path, event.event_type)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            file_path = _canonical(event.src_path)
        except (OSError, ValueError):
            return
        if file_path in self.session.watched_files:
            logger.warning(f"Watched file deleted: {file_path}")

    def __repr__(self) -> str:
        return f"<SessionEventHandler key={self.session.key}>"


class WatchSession:
    """A live watch over the required files of one task folder.

    Attributes:
        key (str): The session key (normalized task folder path).
        watched_files (frozenset): Normalized absolute paths of watched files.
        debounce_seconds (float): The quiet period before a change is emitted.

    Example:
        >>> session = WatchSession("/logs/task-1", ["/logs/task-1/claude_messages.json"], on_change=print)
        >>> session.start()
        >>> # ...
        >>> session.close()
    """

    def __init__(
        self,
        key: str,
        files: Iterable[str],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        on_change: Optional[ChangeCallback] = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.key = normalize_path(key)
        self.watched_files = frozenset(_canonical(f) for f in files)
        self.debounce_seconds = debounce_seconds
        self.on_change = on_change
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._handler = SessionEventHandler(self)
        self._lock = threading.Lock()
        self._pending_file: Optional[str] = None
        self._closed = False
        self._debounce_timer = DebounceTimer(
            debounce_seconds, self._on_debounce_fired, name=f"WatchSession-{get_base_name(self.key)}"
        )

        self.events_detected = 0
        self.changes_emitted = 0
        self.last_event_time: Optional[float] = None

    @property
    def watch_dirs(self) -> List[str]:
        return sorted({get_parent_path(f) for f in self.watched_files})

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_file(self) -> Optional[str]:
        with self._lock:
            return self._pending_file

    def start(self) -> None:
        """Start the observer on every directory holding a watched file.

        Raises:
            WatchError: If the observer cannot be started.
        """
        if self._closed:
            raise WatchError(f"Session {self.key} is closed")
        observer = self._observer_factory()
        try:
            for directory in self.watch_dirs:
                observer.schedule(self._handler, directory, recursive=False)
            observer.start()
        except OSError as e:
            raise WatchError(f"Failed to start observer for {self.key}: {e} (Check inotify limits?)") from e
        self._observer = observer
        logger.info(f"Watching {len(self.watched_files)} files in {self.key} ({type(observer).__name__})")

    def notify_change(self, file_path: str) -> None:
        """Record a raw change for ``file_path`` and restart the quiet period."""
        with self._lock:
            if self._closed:
                return
            self._pending_file = _canonical(file_path)
            self.events_detected += 1
            self.last_event_time = time.monotonic()
            self._debounce_timer.schedule()

    def _on_debounce_fired(self) -> None:
        with self._lock:
            file_path = self._pending_file
            self._pending_file = None
            if self._closed or file_path is None:
                return
            self.changes_emitted += 1

        event = ChangeEvent(file_path=file_path, base_path=self.key, occurred_at=time.time())
        logger.info(f"File changed: {event.file_name} in {self.key}")
        if self.on_change is None:
            return
        try:
            self.on_change(event)
        except Exception as e:
            logger.error(f"Error in change callback for {self.key}: {e}", exc_info=True)

    def close(self) -> None:
        """Cancel the pending debounce and stop the observer. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._pending_file = None
            self._debounce_timer.stop()
            observer = self._observer
            self._observer = None

        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=5.0)
                if observer.is_alive():
                    logger.warning(f"Observer thread for {self.key} did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer for {self.key}: {e}")
        logger.info(f"Closed watch session {self.key}")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "files": len(self.watched_files),
            "events_detected": self.events_detected,
            "changes_emitted": self.changes_emitted,
            "closed": self._closed,
        }

    def __repr__(self) -> str:
        return f"<WatchSession key={self.key} files={len(self.watched_files)} closed={self._closed}>"


class WatchRegistry:
    """Map session keys to live :class:`WatchSession` objects.

    Registration and teardown are serialized by one lock, so two registrations
    for the same key never race.

    Attributes:
        bus (Optional[NotificationBus]): Receives every ChangeEvent, topic = key.
        debounce_seconds (float): Quiet period given to new sessions.
    """

    def __init__(
        self,
        bus: Optional[NotificationBus] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.bus = bus
        self.debounce_seconds = debounce_seconds
        self._observer_factory = observer_factory
        self._sessions: Dict[str, WatchSession] = {}
        self._hooks: Dict[str, List[ChangeCallback]] = {}
        self._lock = threading.RLock()

    def register(self, key: str, files: Iterable[str]) -> WatchSession:
        """Start watching ``files`` under ``key``, replacing any previous session.

        Args:
            key (str): The session key.
            files (Iterable[str]): The files to watch.

        Returns:
            WatchSession: The started session.

        Raises:
            PathInaccessible: A file cannot be stat'd. Any existing session for
                ``key`` is left running.
            WatchError: The observer could not be started.
        """
        key = normalize_path(key)
        files = list(files)
        with self._lock:
            missing: List[str] = []
            for file_path in files:
                try:
                    os.stat(file_path)
                except OSError as e:
                    logger.error(f"Cannot access {file_path}: {e}")
                    missing.append(file_path)
            if missing:
                raise PathInaccessible(
                    f"One or more required files are missing or inaccessible: {', '.join(missing)}",
                    missing=missing,
                )

            previous = self._sessions.pop(key, None)
            if previous is not None:
                logger.info(f"Replacing existing watch session for {key}")
                previous.close()

            session = WatchSession(
                key,
                files,
                debounce_seconds=self.debounce_seconds,
                on_change=self._dispatch,
                observer_factory=self._observer_factory,
            )
            session.start()
            self._sessions[key] = session
            return session

    def close(self, key: str) -> bool:
        """Close the session for ``key`` and drop its hooks.

        Returns False if there was no session.
        """
        key = normalize_path(key)
        with self._lock:
            session = self._sessions.pop(key, None)
            self._hooks.pop(key, None)
        if session is None:
            return False
        session.close()
        return True

    def get(self, key: str) -> Optional[WatchSession]:
        with self._lock:
            return self._sessions.get(normalize_path(key))

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._hooks.clear()
        for session in sessions:
            session.close()

    def on_change(self, key: str, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback`` once per debounced change under ``key``.

        Returns:
            Callable[[], None]: Removes the hook again.
        """
        key = normalize_path(key)
        with self._lock:
            self._hooks.setdefault(key, []).append(callback)

        def remove() -> None:
            with self._lock:
                hooks = self._hooks.get(key)
                if hooks is None or callback not in hooks:
                    return
                hooks.remove(callback)
                if not hooks:
                    del self._hooks[key]

        return remove

    def _dispatch(self, event: ChangeEvent) -> None:
        if self.bus is not None:
            self.bus.publish(event.base_path, event)
        with self._lock:
            hooks = list(self._hooks.get(event.base_path, ()))
        for hook in hooks:
            try:
                hook(event)
            except Exception as e:
                logger.error(f"Error in on_change hook for {event.base_path}: {e}", exc_info=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        with self._lock:
            return normalize_path(key) in self._sessions

    def __repr__(self) -> str:
        return f"<WatchRegistry sessions={len(self)}>"
