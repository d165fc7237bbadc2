"""Live message client for one task folder.

:class:`FileWatcherClient` validates its task folder through a path-validator
collaborator (which also starts the server-side watch), follows the folder's
change notifications through a :class:`ConnectionManager` and, on every
debounced refetch, reads both message sources, filters and normalizes them
and hands the result to ``on_messages_updated``.

A source whose file cannot be read or parsed keeps its previous messages; the
failure is logged and shown in :attr:`FileWatcherClient.status`.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from assistant_log_watcher.connection import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_RECONNECT_DELAY_MAX,
    DEFAULT_REFETCH_DEBOUNCE_SECONDS,
    ConnectionManager,
)
from assistant_log_watcher.errors import ConfigError, ParseError, PathError
from assistant_log_watcher.models import ConnectionState, Message
from assistant_log_watcher.normalizer import MessageNormalizer, filter_valid_records
from assistant_log_watcher.paths import make_session_key
from assistant_log_watcher.reader import SOURCE_FILES, ValidationResult
from assistant_log_watcher.transport import Transport

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ClientStatus", "FileWatcherClient"]

MessagesCallback = Callable[[str, List[Message]], None]


class PathValidator(Protocol):
    def validate_path(self, base_path: Optional[str], task_folder: Optional[str]) -> ValidationResult:
        ...


class MessageReader(Protocol):
    def read_messages(self, base_path: str, task_folder: str, source: str, strict: bool = False) -> List[Any]:
        ...


@dataclass
class ClientStatus:
    """Snapshot of what a status indicator should show.

    Attributes:
        state (ConnectionState): Connection state.
        monitoring (bool): Whether the client has been started and not stopped.
        error (Optional[str]): Last validation, read or connection error.
        last_updated (Optional[float]): Epoch seconds of the last successful read.
        key (Optional[str]): The session key being followed.
    """

    state: ConnectionState = ConnectionState.DISCONNECTED
    monitoring: bool = False
    error: Optional[str] = None
    last_updated: Optional[float] = None
    key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "monitoring": self.monitoring,
            "error": self.error,
            "lastUpdated": self.last_updated,
            "key": self.key,
        }


class FileWatcherClient:
    """Follow one task folder and deliver its normalized messages.

    Attributes:
        base_path (Optional[str]): Directory holding the task folders.
        task_folder (Optional[str]): The task folder to follow.
        manager (ConnectionManager): Connection state machine.
        normalizer (MessageNormalizer): Shared normalizer (and cache).
        sources (Sequence[str]): Source labels read on each refresh.

    Example:
        >>> server = LogWatchServer()
        >>> client = FileWatcherClient(
        ...     "/logs", "1718000000000", server.connect_transport(),
        ...     validator=server, reader=server, on_messages_updated=render,
        ... )
        >>> client.start()
    """

    def __init__(
        self,
        base_path: Optional[str],
        task_folder: Optional[str],
        transport: Transport,
        validator: PathValidator,
        reader: MessageReader,
        on_messages_updated: Optional[MessagesCallback] = None,
        normalizer: Optional[MessageNormalizer] = None,
        sources: Sequence[str] = tuple(SOURCE_FILES),
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        reconnect_delay_max: float = DEFAULT_RECONNECT_DELAY_MAX,
        refetch_debounce_seconds: float = DEFAULT_REFETCH_DEBOUNCE_SECONDS,
    ) -> None:
        self.base_path = base_path
        self.task_folder = task_folder
        self.validator = validator
        self.reader = reader
        self.on_messages_updated = on_messages_updated
        self.normalizer = normalizer or MessageNormalizer()
        self.sources = tuple(sources)
        self.key: Optional[str] = None

        self._messages: Dict[str, List[Message]] = {source: [] for source in self.sources}
        self._status = ClientStatus()
        self._failure_message: Optional[str] = None
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()

        self.manager = ConnectionManager(
            transport,
            on_refetch=self.refresh,
            max_attempts=max_attempts,
            reconnect_delay=reconnect_delay,
            reconnect_delay_max=reconnect_delay_max,
            refetch_debounce_seconds=refetch_debounce_seconds,
        )
        self.manager.add_state_listener(self._on_state_change)

    @property
    def status(self) -> ClientStatus:
        with self._lock:
            return dataclasses.replace(self._status)

    def messages(self, source: str) -> List[Message]:
        with self._lock:
            return list(self._messages.get(source, ()))

    def start(self) -> None:
        """Validate the task folder, load its messages and start following it.

        Raises:
            ConfigError: Base path or task folder is not set.
            PathError: The task folder failed validation.
        """
        if not self.base_path or not self.task_folder:
            with self._lock:
                self._status.error = "Base path and task folder must be configured"
            raise ConfigError("Base path and task folder must be configured")

        result = self.validator.validate_path(self.base_path, self.task_folder)
        if not result.success:
            error = result.error or "Path validation failed"
            logger.error("Validation failed for %s/%s: %s", self.base_path, self.task_folder, error)
            with self._lock:
                self._status.error = error
                self._status.monitoring = False
            raise PathError(error)

        self.key = result.key or make_session_key(self.base_path, self.task_folder)
        with self._lock:
            self._status.error = None
            self._status.monitoring = True
            self._status.key = self.key
        logger.info("Monitoring %s", self.key)

        self.manager.subscribe(self.key)
        self.refresh()
        self.manager.connect()

    def stop(self) -> None:
        self.manager.disconnect()
        with self._lock:
            self._status.monitoring = False
        logger.info("Stopped monitoring %s", self.key)

    def close(self) -> None:
        self.manager.close()
        with self._lock:
            self._status.monitoring = False
            self._status.state = ConnectionState.DISCONNECTED

    def refresh(self) -> Dict[str, List[Message]]:
        """Re-read every source and publish the normalized messages.

        Returns:
            Dict[str, List[Message]]: The current messages per source.
        """
        if not self.base_path or not self.task_folder:
            return {}
        with self._refresh_lock:
            failed = False
            for source in self.sources:
                try:
                    records = self.reader.read_messages(self.base_path, self.task_folder, source, strict=True)
                except (PathError, ParseError) as e:
                    failed = True
                    logger.error("Error reading %s messages: %s", source, e)
                    with self._lock:
                        self._status.error = str(e)
                    continue

                messages = self.normalizer.normalize_batch(filter_valid_records(records))
                with self._lock:
                    self._messages[source] = messages
                    self._status.last_updated = time.time()
                logger.debug("Loaded %d %s messages", len(messages), source)
                self._notify(source, messages)

            if not failed:
                with self._lock:
                    if self._status.error != self._failure_message:
                        self._status.error = None
            return {source: self.messages(source) for source in self.sources}

    def _notify(self, source: str, messages: List[Message]) -> None:
        if self.on_messages_updated is None:
            return
        try:
            self.on_messages_updated(source, list(messages))
        except Exception as e:
            logger.error("Error in on_messages_updated callback: %s", e, exc_info=True)

    def _on_state_change(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        with self._lock:
            self._status.state = new_state
            if new_state is ConnectionState.FAILED:
                self._failure_message = (
                    f"Connection failed after {self.manager.max_attempts} attempts: {self.manager.last_error}"
                )
                self._status.error = self._failure_message
            elif new_state is ConnectionState.CONNECTED and self._failure_message is not None:
                if self._status.error == self._failure_message:
                    self._status.error = None
                self._failure_message = None

    def __enter__(self) -> FileWatcherClient:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<FileWatcherClient key={self.key} state={self.manager.state.value}>"
