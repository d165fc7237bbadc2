"""Tests for the FileWatcherClient."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Generator, List, Tuple
from unittest.mock import MagicMock

import pytest
from _pytest.logging import LogCaptureFixture

from assistant_log_watcher.client import FileWatcherClient
from assistant_log_watcher.errors import ConfigError, PathError
from assistant_log_watcher.models import ConnectionState, Message
from assistant_log_watcher.reader import API_HISTORY_FILE, CLAUDE_MESSAGES_FILE
from assistant_log_watcher.server import LogWatchServer


@pytest.fixture
def quiet_server(mock_observer_factory: MagicMock) -> Generator[LogWatchServer, None, None]:
    """A server whose watch sessions never start real observer threads."""
    srv = LogWatchServer(debounce_seconds=0.05, observer_factory=mock_observer_factory)
    yield srv
    srv.shutdown()


def _client(
    server: LogWatchServer,
    base: Path,
    task: str,
    updates: List[Tuple[str, List[Message]]],
    **kwargs: float,
) -> FileWatcherClient:
    options = dict(reconnect_delay=0.01, reconnect_delay_max=0.02, refetch_debounce_seconds=0.05)
    options.update(kwargs)
    return FileWatcherClient(
        str(base),
        task,
        server.connect_transport(),
        validator=server,
        reader=server,
        on_messages_updated=lambda source, messages: updates.append((source, messages)),
        **options,  # type: ignore[arg-type]
    )


def test_start_requires_configuration(quiet_server: LogWatchServer) -> None:
    client = FileWatcherClient(None, None, quiet_server.connect_transport(), quiet_server, quiet_server)
    with pytest.raises(ConfigError):
        client.start()
    assert client.status.error == "Base path and task folder must be configured"
    assert client.status.monitoring is False
    client.close()


def test_start_with_missing_files_sets_status(quiet_server: LogWatchServer, temp_dir: Path) -> None:
    (temp_dir / "empty-task").mkdir()
    client = FileWatcherClient(str(temp_dir), "empty-task", quiet_server.connect_transport(), quiet_server, quiet_server)

    with pytest.raises(PathError, match="missing or inaccessible"):
        client.start()

    status = client.status
    assert status.error == "One or more required files are missing or inaccessible"
    assert status.monitoring is False
    assert status.state is ConnectionState.DISCONNECTED
    client.close()


def test_start_loads_messages_and_connects(quiet_server: LogWatchServer, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    updates: List[Tuple[str, List[Message]]] = []
    client = _client(quiet_server, base, task, updates)

    client.start()

    status = client.status
    assert status.state is ConnectionState.CONNECTED
    assert status.monitoring is True
    assert status.error is None
    assert status.key == str(base / task)
    assert status.last_updated is not None

    claude = client.messages("claude")
    assert [m.text for m in claude] == ["Reading the project files", "<thinking>which file first?</thinking>"]
    assert [m.type for m in claude] == ["text", "thinking"]
    api = client.messages("api")
    assert [m.role for m in api] == ["user", "assistant"]
    assert api[1].text == "Looking at it"
    assert sorted(source for source, _ in updates) == ["api", "claude"]

    # The task folder is now being watched under the same key
    assert client.key in quiet_server.registry
    client.close()


def test_malformed_file_keeps_previous_messages(
    quiet_server: LogWatchServer, task_dir: Tuple[Path, str], caplog: LogCaptureFixture
) -> None:
    base, task = task_dir
    updates: List[Tuple[str, List[Message]]] = []
    client = _client(quiet_server, base, task, updates)
    client.start()
    updates.clear()

    (base / task / CLAUDE_MESSAGES_FILE).write_text('[{"text": "half', encoding="utf-8")
    (base / task / API_HISTORY_FILE).write_text(
        json.dumps([{"role": "user", "content": "plain string body"}]), encoding="utf-8"
    )
    with caplog.at_level(logging.ERROR):
        client.refresh()

    assert len(client.messages("claude")) == 2
    assert [m.text for m in client.messages("api")] == ["plain string body"]
    assert [source for source, _ in updates] == ["api"]
    assert "Malformed JSON" in (client.status.error or "")
    assert "Error reading claude messages" in caplog.text

    # A later clean read clears the error
    (base / task / CLAUDE_MESSAGES_FILE).write_text(json.dumps([{"text": "recovered"}]), encoding="utf-8")
    client.refresh()
    assert client.status.error is None
    assert [m.text for m in client.messages("claude")] == ["recovered"]
    client.close()


def test_invalid_records_are_filtered(quiet_server: LogWatchServer, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    (base / task / CLAUDE_MESSAGES_FILE).write_text(
        json.dumps([None, 42, {"ts": 1}, {"text": "kept", "ts": 1718000000300}]), encoding="utf-8"
    )
    client = _client(quiet_server, base, task, [])
    client.start()

    messages = client.messages("claude")
    assert len(messages) == 1
    assert messages[0].text == "kept"
    assert messages[0].timestamp == 1718000000300
    client.close()


def test_callback_errors_are_contained(
    quiet_server: LogWatchServer, task_dir: Tuple[Path, str], caplog: LogCaptureFixture
) -> None:
    base, task = task_dir
    client = FileWatcherClient(
        str(base),
        task,
        quiet_server.connect_transport(),
        validator=quiet_server,
        reader=quiet_server,
        on_messages_updated=MagicMock(side_effect=RuntimeError("render failed")),
    )
    with caplog.at_level(logging.ERROR):
        client.start()

    assert "render failed" in caplog.text
    assert len(client.messages("claude")) == 2
    client.close()


def test_connection_failure_is_visible(
    quiet_server: LogWatchServer, task_dir: Tuple[Path, str], wait_for: Callable[..., bool]
) -> None:
    base, task = task_dir
    quiet_server.hub.available = False
    client = _client(quiet_server, base, task, [], max_attempts=2)

    client.start()

    assert wait_for(lambda: client.status.state is ConnectionState.FAILED)
    assert client.status.error == "Connection failed after 2 attempts: Notification server unavailable"
    # Messages were still loaded once
    assert len(client.messages("claude")) == 2

    # A successful read does not hide the connection failure
    client.refresh()
    assert client.status.error is not None

    quiet_server.hub.available = True
    client.manager.connect()
    assert client.status.state is ConnectionState.CONNECTED
    assert client.status.error is None
    client.close()


def test_stop_and_context_manager(quiet_server: LogWatchServer, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    with _client(quiet_server, base, task, []) as client:
        assert client.status.monitoring is True
        client.stop()
        assert client.status.monitoring is False
        assert client.status.state is ConnectionState.DISCONNECTED

    assert client.manager.closed
    status: Dict[str, object] = client.status.to_dict()
    assert status["state"] == "disconnected"
    assert status["monitoring"] is False


def test_appended_message_is_delivered(
    server: LogWatchServer, task_dir: Tuple[Path, str], wait_for: Callable[..., bool]
) -> None:
    """A write to a watched file reaches the client through the bus."""
    base, task = task_dir
    updates: List[Tuple[str, List[Message]]] = []
    client = _client(server, base, task, updates)
    client.start()
    updates.clear()

    claude_file = base / task / CLAUDE_MESSAGES_FILE
    records = json.loads(claude_file.read_text(encoding="utf-8"))
    records.append({"ts": 1718000000300, "type": "say", "say": "text", "text": "Running the tests"})
    claude_file.write_text(json.dumps(records), encoding="utf-8")

    assert wait_for(
        lambda: any(source == "claude" and len(msgs) == 3 for source, msgs in list(updates)), timeout=5.0
    )
    assert client.messages("claude")[-1].text == "Running the tests"
    client.close()


def test_server_shutdown_drops_client(
    server: LogWatchServer, task_dir: Tuple[Path, str], wait_for: Callable[..., bool]
) -> None:
    base, task = task_dir
    client = _client(server, base, task, [], max_attempts=2)
    client.start()
    assert client.status.state is ConnectionState.CONNECTED

    server.shutdown()

    assert wait_for(lambda: client.status.state is ConnectionState.FAILED)
    client.close()
