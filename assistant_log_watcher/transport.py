"""Persistent bidirectional transport between clients and the notification bus.

:class:`Transport` is the client-side contract the ConnectionManager is built
on. :class:`LocalTransport` implements it in-process against a
:class:`LocalHub`, which fronts a :class:`NotificationBus` the way a socket
server would: each open transport gets one server-side connection, topic
subscriptions go to the bus, and published events come back through the
transport's message handler.

The hub can simulate outages: ``hub.available = False`` makes ``open()`` fail
and :meth:`LocalHub.drop_all` severs every live connection.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from assistant_log_watcher.bus import NotificationBus
from assistant_log_watcher.errors import TransportError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["LocalHub", "LocalServerConnection", "LocalTransport", "Transport"]

MessageHandler = Callable[[str, Dict[str, Any]], None]
DisconnectHandler = Callable[[str], None]


class Transport(ABC):
    """Client end of a persistent connection with named-topic subscriptions."""

    def __init__(self) -> None:
        self._on_message: Optional[MessageHandler] = None
        self._on_disconnect: Optional[DisconnectHandler] = None

    def set_handlers(
        self,
        on_message: Optional[MessageHandler],
        on_disconnect: Optional[DisconnectHandler],
    ) -> None:
        """Install (or with None, detach) the inbound handlers.

        Args:
            on_message: Called with ``(event_name, payload)`` per inbound message.
            on_disconnect: Called with a reason when the connection drops
                without a local ``close()``.
        """
        self._on_message = on_message
        self._on_disconnect = on_disconnect

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def open(self) -> None:
        """Establish the connection.

        Raises:
            TransportError: The connection cannot be established.
        """

    @abstractmethod
    def close(self) -> None:
        """Tear the connection down. Idempotent; does not call on_disconnect."""

    @abstractmethod
    def subscribe(self, topic: str) -> None:
        ...

    @abstractmethod
    def unsubscribe(self, topic: str) -> None:
        ...

    def _dispatch_message(self, event_name: str, payload: Dict[str, Any]) -> None:
        handler = self._on_message
        if handler is None:
            return
        try:
            handler(event_name, payload)
        except Exception as e:
            logger.error(f"Error handling {event_name} message: {e}", exc_info=True)

    def _dispatch_disconnect(self, reason: str) -> None:
        handler = self._on_disconnect
        if handler is None:
            return
        try:
            handler(reason)
        except Exception as e:
            logger.error(f"Error handling disconnect: {e}", exc_info=True)


class LocalServerConnection:
    """Server-side end of a :class:`LocalTransport`; what the bus delivers to."""

    def __init__(self, transport: LocalTransport) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.closed = False

    def send(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise TransportError(f"Connection {self.id} is closed")
        self.transport._dispatch_message(event_name, payload)

    def __repr__(self) -> str:
        return f"<LocalServerConnection id={self.id[:8]} closed={self.closed}>"


class LocalHub:
    """In-process stand-in for the socket server in front of a bus.

    Attributes:
        bus (NotificationBus): Where subscriptions and deliveries live.
        available (bool): While False, new connections are refused.
        connection_attempts (int): Total number of ``accept`` calls.
    """

    def __init__(self, bus: NotificationBus) -> None:
        self.bus = bus
        self.available = True
        self.connection_attempts = 0
        self._connections: Dict[str, LocalServerConnection] = {}
        self._lock = threading.Lock()

    def accept(self, transport: LocalTransport) -> LocalServerConnection:
        with self._lock:
            self.connection_attempts += 1
            if not self.available:
                raise TransportError("Notification server unavailable")
            connection = LocalServerConnection(transport)
            self._connections[connection.id] = connection
        logger.debug(f"Accepted connection {connection.id}")
        return connection

    def release(self, connection: LocalServerConnection) -> None:
        with self._lock:
            self._connections.pop(connection.id, None)
        connection.closed = True
        self.bus.unsubscribe_all(connection)

    def connections(self) -> List[LocalServerConnection]:
        with self._lock:
            return list(self._connections.values())

    def drop_all(self, reason: str = "server dropped connection") -> int:
        """Sever every live connection as a network failure would."""
        with self._lock:
            dropped = list(self._connections.values())
            self._connections.clear()
        for connection in dropped:
            connection.closed = True
            self.bus.unsubscribe_all(connection)
            connection.transport._connection_lost(connection, reason)
        if dropped:
            logger.warning(f"Dropped {len(dropped)} connections: {reason}")
        return len(dropped)

    def __repr__(self) -> str:
        return f"<LocalHub available={self.available} connections={len(self.connections())}>"


class LocalTransport(Transport):
    """:class:`Transport` backed by a :class:`LocalHub` in the same process."""

    def __init__(self, hub: LocalHub) -> None:
        super().__init__()
        self.hub = hub
        self._connection: Optional[LocalServerConnection] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    @property
    def connection_id(self) -> Optional[str]:
        connection = self._connection
        return connection.id if connection is not None else None

    def open(self) -> None:
        with self._lock:
            if self._connection is not None:
                return
            self._connection = self.hub.accept(self)

    def close(self) -> None:
        with self._lock:
            connection = self._connection
            self._connection = None
        if connection is not None:
            self.hub.release(connection)

    def _require_connection(self) -> LocalServerConnection:
        connection = self._connection
        if connection is None:
            raise TransportError("Transport is not open")
        return connection

    def subscribe(self, topic: str) -> None:
        self.hub.bus.subscribe(self._require_connection(), topic)

    def unsubscribe(self, topic: str) -> None:
        connection = self._connection
        if connection is not None:
            self.hub.bus.unsubscribe(connection, topic)

    def _connection_lost(self, connection: LocalServerConnection, reason: str) -> None:
        with self._lock:
            if self._connection is not connection:
                return
            self._connection = None
        self._dispatch_disconnect(reason)

    def __repr__(self) -> str:
        return f"<LocalTransport open={self.is_open}>"
