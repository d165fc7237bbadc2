"""Client-side connection state machine with a bounded reconnect budget.

States and transitions::

    DISCONNECTED --connect()--> CONNECTING --ok--> CONNECTED
    CONNECTING/RECONNECTING --error--> RECONNECTING   (retries remain)
    CONNECTING/RECONNECTING --error--> FAILED         (budget spent)
    CONNECTED --drop--> DISCONNECTED --> RECONNECTING
    any --disconnect()--> DISCONNECTED
    FAILED --connect()/reset()--> ...

Retries run on ``threading.Timer`` with capped exponential backoff. Change
notifications for subscribed keys restart a refetch debounce instead of
refetching per message.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from assistant_log_watcher.bus import FILE_UPDATED
from assistant_log_watcher.debounce import DebounceTimer
from assistant_log_watcher.errors import TransportError
from assistant_log_watcher.models import ConnectionState
from assistant_log_watcher.paths import normalize_path
from assistant_log_watcher.transport import Transport

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RECONNECT_DELAY",
    "DEFAULT_RECONNECT_DELAY_MAX",
    "DEFAULT_REFETCH_DEBOUNCE_SECONDS",
    "ConnectionManager",
]

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_RECONNECT_DELAY_MAX = 5.0
DEFAULT_REFETCH_DEBOUNCE_SECONDS = 1.0

StateListener = Callable[[ConnectionState, ConnectionState], None]
Transition = Tuple[ConnectionState, ConnectionState]


class ConnectionManager:
    """Drive one logical connection to the notification source.

    Attributes:
        transport (Transport): The underlying transport.
        max_attempts (int): Consecutive failures before giving up.
        reconnect_delay (float): Base retry delay in seconds.
        reconnect_delay_max (float): Upper bound of the retry delay.
        last_error (Optional[str]): Message of the last transport error.

    Example:
        >>> manager = ConnectionManager(transport, on_refetch=reload)
        >>> manager.subscribe("/logs/task-1")
        >>> manager.connect()
    """

    def __init__(
        self,
        transport: Transport,
        on_refetch: Callable[[], None],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        reconnect_delay_max: float = DEFAULT_RECONNECT_DELAY_MAX,
        refetch_debounce_seconds: float = DEFAULT_REFETCH_DEBOUNCE_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self.transport = transport
        self.on_refetch = on_refetch
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = max(reconnect_delay, reconnect_delay_max)
        self.last_error: Optional[str] = None

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._topics: List[str] = []
        self._listeners: List[StateListener] = []
        self._retry_timer: Optional[threading.Timer] = None
        self._closed = False
        self._lock = threading.RLock()
        self._refetch_timer = DebounceTimer(refetch_debounce_seconds, self._fire_refetch, name="RefetchDebounce")

        self.transport.set_handlers(self._handle_message, self._handle_disconnect)

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._attempts

    @property
    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topics)

    @property
    def closed(self) -> bool:
        return self._closed

    def retry_delay(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (1-based)."""
        return min(self.reconnect_delay * (2 ** max(attempt - 1, 0)), self.reconnect_delay_max)

    def add_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def subscribe(self, key: str) -> None:
        """Follow change notifications for ``key`` (also across reconnects)."""
        topic = normalize_path(key)
        with self._lock:
            if topic in self._topics:
                return
            self._topics.append(topic)
            connected = self._state is ConnectionState.CONNECTED
        if connected:
            try:
                self.transport.subscribe(topic)
            except TransportError as e:
                logger.warning("Failed to subscribe to %s: %s", topic, e)

    def unsubscribe(self, key: str) -> None:
        topic = normalize_path(key)
        with self._lock:
            if topic not in self._topics:
                return
            self._topics.remove(topic)
        try:
            self.transport.unsubscribe(topic)
        except TransportError as e:
            logger.debug("Failed to unsubscribe from %s: %s", topic, e)

    def connect(self) -> None:
        """Start connecting. A no-op unless DISCONNECTED or FAILED.

        Raises:
            TransportError: If the manager has been closed.
        """
        with self._lock:
            if self._closed:
                raise TransportError("Connection manager is closed")
            if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                logger.debug("connect() ignored in state %s", self._state.value)
                return
            self._cancel_retry()
            self._attempts = 0
            transitions = [self._set_state(ConnectionState.CONNECTING)]
        self._emit(transitions)
        self._attempt()

    def disconnect(self) -> None:
        """Tear the connection down. Always ends DISCONNECTED; idempotent."""
        with self._lock:
            self._cancel_retry()
            self._refetch_timer.cancel()
            self._attempts = 0
            transitions = [self._set_state(ConnectionState.DISCONNECTED)]
        self.transport.close()
        self._emit(transitions)

    def reset(self) -> None:
        """Leave FAILED (or any state) for DISCONNECTED with a fresh budget."""
        self.disconnect()

    def close(self) -> None:
        """Disconnect and detach everything. No timer fires afterwards."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.disconnect()
        self._refetch_timer.stop()
        self.transport.set_handlers(None, None)
        with self._lock:
            self._listeners.clear()
        logger.debug("Connection manager closed")

    def _set_state(self, new_state: ConnectionState) -> Optional[Transition]:
        old_state = self._state
        if old_state is new_state:
            return None
        self._state = new_state
        logger.info("Connection state: %s -> %s", old_state.value, new_state.value)
        return old_state, new_state

    def _emit(self, transitions: List[Optional[Transition]]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for transition in transitions:
            if transition is None:
                continue
            for listener in listeners:
                try:
                    listener(*transition)
                except Exception as e:
                    logger.error("Error in connection state listener: %s", e, exc_info=True)

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _schedule_retry(self) -> None:
        delay = self.retry_delay(self._attempts)
        logger.warning(
            "Reconnecting in %.2fs (attempt %d/%d)", delay, self._attempts + 1, self.max_attempts
        )
        self._cancel_retry()
        timer = threading.Timer(delay, self._attempt)
        timer.daemon = True
        timer.name = "ReconnectTimer"
        self._retry_timer = timer
        timer.start()

    def _attempt(self) -> None:
        with self._lock:
            self._retry_timer = None
            if self._closed or self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                return
            topics = list(self._topics)

        try:
            self.transport.open()
            for topic in topics:
                self.transport.subscribe(topic)
        except TransportError as e:
            self._attempt_failed(e)
            return

        with self._lock:
            if self._closed or self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                # disconnect() won the race
                abandon = True
            else:
                abandon = False
                # Topics added or removed while the transport was opening
                added = [topic for topic in self._topics if topic not in topics]
                removed = [topic for topic in topics if topic not in self._topics]
                self._attempts = 0
                self.last_error = None
                transitions = [self._set_state(ConnectionState.CONNECTED)]
                # Catch up on anything written while disconnected
                self._refetch_timer.schedule()
        if abandon:
            self.transport.close()
            return
        self._sync_topics(added, removed)
        self._emit(transitions)

    def _sync_topics(self, added: List[str], removed: List[str]) -> None:
        for topic in added:
            try:
                self.transport.subscribe(topic)
            except TransportError as e:
                logger.warning("Failed to subscribe to %s: %s", topic, e)
        for topic in removed:
            try:
                self.transport.unsubscribe(topic)
            except TransportError as e:
                logger.debug("Failed to unsubscribe from %s: %s", topic, e)

    def _attempt_failed(self, error: Exception) -> None:
        self.transport.close()
        with self._lock:
            if self._closed or self._state not in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
                return
            self._attempts += 1
            self.last_error = str(error)
            logger.warning("Connection attempt %d/%d failed: %s", self._attempts, self.max_attempts, error)
            if self._attempts >= self.max_attempts:
                logger.error("Max reconnection attempts reached, giving up")
                transitions = [self._set_state(ConnectionState.FAILED)]
            else:
                transitions = [self._set_state(ConnectionState.RECONNECTING)]
                self._schedule_retry()
        self._emit(transitions)

    def _handle_disconnect(self, reason: str) -> None:
        with self._lock:
            if self._closed or self._state is not ConnectionState.CONNECTED:
                return
            self.last_error = reason
            transitions = [
                self._set_state(ConnectionState.DISCONNECTED),
                self._set_state(ConnectionState.RECONNECTING),
            ]
            self._attempts = 0
            self._schedule_retry()
        self._emit(transitions)

    def _handle_message(self, event_name: str, payload: Dict[str, Any]) -> None:
        if event_name != FILE_UPDATED:
            return
        key = normalize_path(payload.get("path"))
        with self._lock:
            if self._closed or key not in self._topics:
                return
        logger.debug("Received %s for %s (%s)", event_name, key, payload.get("file"))
        self._refetch_timer.schedule()

    def _fire_refetch(self) -> None:
        if self._closed:
            return
        self.on_refetch()

    def __repr__(self) -> str:
        return f"<ConnectionManager state={self._state.value} retries={self._attempts}/{self.max_attempts}>"
