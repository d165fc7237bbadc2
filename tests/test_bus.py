from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple
from unittest.mock import MagicMock

from _pytest.logging import LogCaptureFixture

from assistant_log_watcher.bus import FILE_UPDATED, NotificationBus
from assistant_log_watcher.models import ChangeEvent


class RecordingConnection:
    def __init__(self, name: str) -> None:
        self.id = name
        self.received: List[Tuple[str, Dict[str, Any]]] = []

    def send(self, event_name: str, payload: Dict[str, Any]) -> None:
        self.received.append((event_name, payload))


def _event(key: str, name: str = "claude_messages.json", occurred_at: float = 1718000000.5) -> ChangeEvent:
    return ChangeEvent(file_path=f"{key}/{name}", base_path=key, occurred_at=occurred_at)


def test_publish_payload_shape(bus: NotificationBus) -> None:
    conn = RecordingConnection("a")
    bus.subscribe(conn, "/logs/task-1")

    assert bus.publish("/logs/task-1", _event("/logs/task-1")) == 1
    assert conn.received == [
        (
            FILE_UPDATED,
            {
                "file": "claude_messages.json",
                "filePath": "/logs/task-1/claude_messages.json",
                "path": "/logs/task-1",
                "occurredAt": 1718000000500,
            },
        )
    ]


def test_subscription_isolation(bus: NotificationBus) -> None:
    conn_a = RecordingConnection("a")
    conn_b = RecordingConnection("b")
    bus.subscribe(conn_a, "/logs/task-a")
    bus.subscribe(conn_b, "/logs/task-b")

    bus.publish("/logs/task-b", _event("/logs/task-b"))
    bus.publish("/logs/task-b/", _event("/logs/task-b"))

    assert conn_a.received == []
    assert len(conn_b.received) == 2


def test_subscribe_is_idempotent(bus: NotificationBus) -> None:
    conn = RecordingConnection("a")
    bus.subscribe(conn, "/logs/task-1")
    bus.subscribe(conn, "/logs/task-1/")

    assert bus.publish("/logs/task-1", _event("/logs/task-1")) == 1
    assert bus.subscribers("/logs/task-1") == [conn]


def test_unsubscribe_and_unsubscribe_all(bus: NotificationBus) -> None:
    conn = RecordingConnection("a")
    bus.subscribe(conn, "/logs/one")
    bus.subscribe(conn, "/logs/two")
    assert sorted(bus.topics_for(conn)) == ["/logs/one", "/logs/two"]

    bus.unsubscribe(conn, "/logs/one")
    bus.unsubscribe(conn, "/logs/one")
    assert bus.topics_for(conn) == ["/logs/two"]

    assert bus.unsubscribe_all(conn) == ["/logs/two"]
    assert bus.topics() == []
    assert bus.publish("/logs/two", _event("/logs/two")) == 0


def test_failing_connection_does_not_block_others(bus: NotificationBus, caplog: LogCaptureFixture) -> None:
    broken = MagicMock()
    broken.id = "broken"
    broken.send.side_effect = ConnectionResetError("peer gone")
    healthy = RecordingConnection("healthy")
    bus.subscribe(broken, "/logs/task")
    bus.subscribe(healthy, "/logs/task")

    with caplog.at_level(logging.WARNING):
        delivered = bus.publish("/logs/task", _event("/logs/task"))

    assert delivered == 1
    assert len(healthy.received) == 1
    assert "peer gone" in caplog.text


def test_publish_order_is_preserved_per_topic(bus: NotificationBus) -> None:
    conn = RecordingConnection("a")
    bus.subscribe(conn, "/logs/task")
    for i in range(20):
        bus.publish("/logs/task", _event("/logs/task", occurred_at=float(i)))

    assert [payload["occurredAt"] for _, payload in conn.received] == [i * 1000 for i in range(20)]


def test_late_subscriber_gets_no_replay(bus: NotificationBus) -> None:
    bus.publish("/logs/task", _event("/logs/task"))
    conn = RecordingConnection("late")
    bus.subscribe(conn, "/logs/task")
    assert conn.received == []


def test_subscribe_during_delivery_does_not_deadlock(bus: NotificationBus) -> None:
    late = RecordingConnection("late")

    class Subscriber(RecordingConnection):
        def send(self, event_name: str, payload: Dict[str, Any]) -> None:
            super().send(event_name, payload)
            bus.subscribe(late, "/logs/task")

    first = Subscriber("first")
    bus.subscribe(first, "/logs/task")

    assert bus.publish("/logs/task", _event("/logs/task")) == 1
    assert late.received == []
    assert bus.publish("/logs/task", _event("/logs/task")) == 2
