"""Topic-scoped fan-out of change notifications to connected clients.

A topic is a watch-session key. Connections subscribe to the keys they care
about and only ever receive ``fileUpdated`` messages published under those
keys. There is no replay buffer: a connection that subscribes after a publish
does not see it.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Protocol

from assistant_log_watcher.models import ChangeEvent
from assistant_log_watcher.paths import normalize_path

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["FILE_UPDATED", "Connection", "NotificationBus"]

FILE_UPDATED = "fileUpdated"


class Connection(Protocol):
    """Server-side end of a client connection."""

    id: str

    def send(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class NotificationBus:
    """Deliver ChangeEvents to the connections subscribed to their key.

    Subscription state and delivery use separate locks: delivery is
    serialized per bus (so per-topic order equals publish order) while
    subscribe/unsubscribe calls made from inside a delivery never block.
    """

    def __init__(self) -> None:
        # topic -> connections, in subscription order
        self._topics: Dict[str, Dict[Connection, None]] = {}
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self.published = 0

    def subscribe(self, connection: Connection, key: str) -> None:
        topic = normalize_path(key)
        with self._lock:
            subscribers = self._topics.setdefault(topic, {})
            if connection in subscribers:
                return
            subscribers[connection] = None
        logger.debug("Connection %s subscribed to %s", getattr(connection, "id", connection), topic)

    def unsubscribe(self, connection: Connection, key: str) -> None:
        topic = normalize_path(key)
        with self._lock:
            subscribers = self._topics.get(topic)
            if not subscribers or connection not in subscribers:
                return
            del subscribers[connection]
            if not subscribers:
                del self._topics[topic]
        logger.debug("Connection %s unsubscribed from %s", getattr(connection, "id", connection), topic)

    def unsubscribe_all(self, connection: Connection) -> List[str]:
        """Drop every subscription of ``connection`` and return the topics it had."""
        removed: List[str] = []
        with self._lock:
            for topic in list(self._topics):
                subscribers = self._topics[topic]
                if connection in subscribers:
                    del subscribers[connection]
                    removed.append(topic)
                    if not subscribers:
                        del self._topics[topic]
        return removed

    def subscribers(self, key: str) -> List[Connection]:
        with self._lock:
            return list(self._topics.get(normalize_path(key), ()))

    def topics_for(self, connection: Connection) -> List[str]:
        with self._lock:
            return [topic for topic, subscribers in self._topics.items() if connection in subscribers]

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topics)

    def publish(self, key: str, event: ChangeEvent) -> int:
        """Send ``event`` to the current subscribers of ``key``.

        A connection whose ``send`` raises is logged and skipped; the other
        subscribers still receive the event.

        Returns:
            int: The number of successful deliveries.
        """
        topic = normalize_path(key)
        payload = event.to_payload()
        delivered = 0
        with self._publish_lock:
            targets = self.subscribers(topic)
            for connection in targets:
                try:
                    connection.send(FILE_UPDATED, dict(payload))
                except Exception as e:
                    logger.warning(
                        "Failed to deliver %s to connection %s: %s",
                        FILE_UPDATED,
                        getattr(connection, "id", connection),
                        e,
                    )
                    continue
                delivered += 1
            self.published += 1
        logger.debug("Published %s for %s to %d/%d subscribers", payload["file"], topic, delivered, len(targets))
        return delivered

    def __repr__(self) -> str:
        return f"<NotificationBus topics={len(self.topics())}>"
