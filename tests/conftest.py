from __future__ import annotations

import json
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Generator, List, Tuple
from unittest.mock import MagicMock, patch

import pytest

from assistant_log_watcher.bus import NotificationBus
from assistant_log_watcher.config import Config
from assistant_log_watcher.reader import API_HISTORY_FILE, CLAUDE_MESSAGES_FILE, LAST_UPDATED_FILE
from assistant_log_watcher.server import LogWatchServer
from assistant_log_watcher.transport import LocalHub, LocalTransport

TASK_FOLDER = "1718000000000"


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def write_records(path: Path, records: Any) -> None:
    path.write_text(json.dumps(records), encoding="utf-8")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def sample_claude_records() -> List[dict]:
    return [
        {"ts": 1718000000100, "type": "say", "say": "text", "text": "Reading the project files"},
        {"ts": 1718000000200, "type": "say", "say": "text", "text": "<thinking>which file first?</thinking>"},
    ]


@pytest.fixture
def sample_api_records() -> List[dict]:
    return [
        {"role": "user", "content": [{"type": "text", "text": "Fix the failing test"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "Looking at it"}, {"type": "tool_use"}]},
    ]


@pytest.fixture
def task_dir(temp_dir: Path, sample_claude_records: List[dict], sample_api_records: List[dict]) -> Tuple[Path, str]:
    """A base path holding one task folder with the three required files."""
    base = temp_dir / "tasks"
    task = base / TASK_FOLDER
    task.mkdir(parents=True)
    write_records(task / CLAUDE_MESSAGES_FILE, sample_claude_records)
    write_records(task / API_HISTORY_FILE, sample_api_records)
    (task / LAST_UPDATED_FILE).write_text("1718000000200", encoding="utf-8")
    return base, TASK_FOLDER


@pytest.fixture
def mock_observer_factory() -> MagicMock:
    """Factory returning MagicMock observers (no real watchdog threads)."""
    factory = MagicMock()
    factory.return_value.is_alive.return_value = False
    return factory


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def hub(bus: NotificationBus) -> LocalHub:
    return LocalHub(bus)


@pytest.fixture
def transport(hub: LocalHub) -> LocalTransport:
    return LocalTransport(hub)


@pytest.fixture
def server() -> Generator[LogWatchServer, None, None]:
    """A server with real observers and a short quiet period."""
    srv = LogWatchServer(debounce_seconds=0.05)
    yield srv
    srv.shutdown()


@pytest.fixture
def mock_config() -> Config:
    """Fixture for a default Config object."""
    return Config(
        base_path=None,
        task_folder=None,
        log_file=None,
        log_level="INFO",
        watch_debounce_seconds=0.5,
        refetch_debounce_seconds=1.0,
        max_reconnect_attempts=5,
        reconnect_delay=1.0,
        reconnect_delay_max=5.0,
        cache_size=1000,
    )


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path) -> None:
    """Isolate config loading from the developer's environment and config files."""
    for key in (
        "BASE_PATH",
        "TASK_FOLDER",
        "LOG_FILE",
        "LOG_LEVEL",
        "WATCH_DEBOUNCE_SECONDS",
        "REFETCH_DEBOUNCE_SECONDS",
        "MAX_RECONNECT_ATTEMPTS",
        "RECONNECT_DELAY",
        "RECONNECT_DELAY_MAX",
        "CACHE_SIZE",
    ):
        monkeypatch.delenv(f"LOG_WATCHER_{key}", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "xdg"))
    monkeypatch.chdir(temp_dir)


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Fixture exposing :func:`wait_until` to tests."""
    return wait_until
