"""Data model shared by the watcher, the bus, the client and the normalizer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from assistant_log_watcher.paths import get_base_name

__all__ = [
    "ROLES",
    "MESSAGE_TYPES",
    "ChangeEvent",
    "ConnectionState",
    "Message",
    "now_ms",
]

ROLES = ("user", "assistant", "system")
MESSAGE_TYPES = ("text", "thinking", "api_request", "tool_response", "error")


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChangeEvent:
    """One coalesced change notification for a watch session.

    Attributes:
        file_path (str): The last watched file that changed in the quiet window.
        base_path (str): The session key the file belongs to.
        occurred_at (float): Epoch seconds at which the debounce window closed.
    """

    file_path: str
    base_path: str
    occurred_at: float

    @property
    def file_name(self) -> str:
        return get_base_name(self.file_path)

    def to_payload(self) -> Dict[str, Any]:
        """Return the ``fileUpdated`` wire payload."""
        return {
            "file": self.file_name,
            "filePath": self.file_path,
            "path": self.base_path,
            "occurredAt": int(self.occurred_at * 1000),
        }


class ConnectionState(str, Enum):
    """States of the client connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class Message:
    """Canonical message consumed by the application layer.

    Instances are immutable so a cached Message can be handed out repeatedly.

    Attributes:
        text (str): Display text, never None.
        timestamp (int): Epoch milliseconds.
        role (str): One of :data:`ROLES`.
        type (str): One of :data:`MESSAGE_TYPES`.
        metadata (Dict[str, Any]): Auxiliary fields (tool, path, approval state...).
        is_error (bool): Whether the record represents an error.
        error_text (Optional[str]): Human readable error message.
    """

    text: str
    timestamp: int
    role: str = "assistant"
    type: str = "text"
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    error_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire shape (camelCase keys, metadata copied)."""
        return {
            "text": self.text,
            "timestamp": self.timestamp,
            "role": self.role,
            "type": self.type,
            "metadata": dict(self.metadata),
            "isError": self.is_error,
            "errorText": self.error_text,
        }
