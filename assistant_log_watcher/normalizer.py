"""Convert raw log records into canonical :class:`Message` objects.

Responsibility:
    Map the heterogeneous record shapes found in assistant log files onto one
    stable message shape. The mapping is an ordered decision table; the first
    rule whose predicate matches builds the message:

    ====  =========================================  ==================================
    #     Record shape                               Result
    ====  =========================================  ==================================
    1     ``isError: true``                          ``error`` / ``system``
    2     ``type: say, say: text``                   ``thinking`` or ``text`` / ``assistant``
    3     ``type: say, say: api_req_started``        ``api_request`` / ``system``
    4     ``type: ask, ask: tool``                   ``tool_response`` / ``system``
    5     array ``content``                          ``text``, text entries joined
    6     string ``text``                            pass-through with defaults
    7     anything else                              dropped (``None``)
    ====  =========================================  ==================================

Key Invariants:
    - Every produced message has a string ``text`` and an integer ``timestamp``.
    - Normalizing a canonical message again yields an equal message.
    - Results are memoized per serialized record in a bounded FIFO cache; a
      cache hit returns the same instance that was stored.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from assistant_log_watcher.models import MESSAGE_TYPES, ROLES, Message, now_ms

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DEFAULT_CACHE_SIZE",
    "MessageNormalizer",
    "NormalizationCache",
    "filter_valid_records",
    "is_valid_record",
    "record_key",
]

DEFAULT_CACHE_SIZE = 1000
THINKING_MARKER = "<thinking>"

Record = Mapping[str, Any]
Rule = Tuple[str, Callable[[Record], bool], Callable[[Record], Optional[Message]]]


def is_valid_record(record: Any) -> bool:
    """Return True if ``record`` is worth handing to the normalizer.

    A record must be a dict carrying a string ``text``, an array ``content`` or
    a string ``content``.
    """
    if not isinstance(record, dict):
        return False
    return (
        isinstance(record.get("text"), str)
        or isinstance(record.get("content"), (list, str))
    )


def filter_valid_records(records: Iterable[Any]) -> List[Dict[str, Any]]:
    """Drop records that fail :func:`is_valid_record`, keeping order."""
    valid = [r for r in records if is_valid_record(r)]
    return valid


def record_key(record: Record) -> str:
    """Return a stable hash of the record's serialized form."""
    serialized = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class NormalizationCache:
    """Bounded FIFO memo of normalization results.

    Eviction removes the oldest *inserted* key once the size exceeds
    ``max_size``; lookups do not refresh an entry's position.

    Attributes:
        max_size (int): Maximum number of entries kept.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        if max_size < 1:
            raise ValueError(f"Cache size must be positive, got {max_size}")
        self.max_size = max_size
        self._entries: "OrderedDict[str, Message]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def lookup(self, key: str) -> Optional[Message]:
        with self._lock:
            message = self._entries.get(key)
            if message is None:
                self.misses += 1
            else:
                self.hits += 1
            return message

    def insert(self, key: str, message: Message) -> Message:
        """Store ``message`` and evict the oldest entries beyond the bound.

        An existing entry for ``key`` wins, so concurrent normalizations of the
        same record converge on one instance.
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            self._entries[key] = message
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return message

    def evict(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:
        return f"<NormalizationCache size={len(self)} max={self.max_size}>"


def _resolve_timestamp(record: Record) -> int:
    """Return the record timestamp in epoch ms, defaulting to now."""
    for field_name in ("timestamp", "ts"):
        value = record.get(field_name)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            # NaN and infinities parse as JSON numbers but are not instants
            if math.isfinite(value):
                return int(value)
            logger.debug("Non-finite timestamp %r, using current time", value)
            continue
        if isinstance(value, str) and value.strip():
            text = value.strip()
            try:
                number = float(text)
            except ValueError:
                number = None
            if number is not None:
                if math.isfinite(number):
                    return int(number)
                logger.debug("Non-finite timestamp %r, using current time", value)
                continue
            try:
                ts_str = text[:-1] + "+00:00" if text.endswith("Z") else text
                parsed = datetime.fromisoformat(ts_str)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return int(parsed.timestamp() * 1000)
            except (ValueError, OverflowError, OSError):
                logger.debug("Unparsable timestamp %r, using current time", value)
    return now_ms()


def _text_of(record: Record) -> str:
    text = record.get("text")
    return text if isinstance(text, str) else ""


def _role_of(record: Record, default: str = "assistant") -> str:
    role = record.get("role")
    return role if role in ROLES else default


def _metadata_of(record: Record) -> Dict[str, Any]:
    metadata = record.get("metadata")
    return dict(metadata) if isinstance(metadata, dict) else {}


def _error_text_of(record: Record) -> Optional[str]:
    value = record.get("errorText")
    return value if isinstance(value, str) else None


def _build_error(record: Record) -> Message:
    return Message(
        text=_text_of(record),
        timestamp=_resolve_timestamp(record),
        role="system",
        type="error",
        metadata=_metadata_of(record),
        is_error=True,
        error_text=_error_text_of(record),
    )


def _build_say_text(record: Record) -> Message:
    text = _text_of(record)
    return Message(
        text=text,
        timestamp=_resolve_timestamp(record),
        role="assistant",
        type="thinking" if text.startswith(THINKING_MARKER) else "text",
        metadata=_metadata_of(record),
    )


def _build_api_request(record: Record) -> Message:
    metadata = _metadata_of(record)
    metadata["isApiRequest"] = True
    text = _text_of(record)
    if text:
        try:
            request = json.loads(text)
        except ValueError:
            request = None
        if isinstance(request, dict):
            metadata["request"] = request
    return Message(
        text=text,
        timestamp=_resolve_timestamp(record),
        role="system",
        type="api_request",
        metadata=metadata,
    )


def _build_tool_response(record: Record) -> Optional[Message]:
    raw_text = _text_of(record)
    try:
        payload = json.loads(raw_text)
    except (TypeError, ValueError) as e:
        logger.debug("Dropping tool record with unparsable payload: %s", e)
        return None
    if not isinstance(payload, dict):
        logger.debug("Dropping tool record whose payload is not an object")
        return None

    result = payload.get("result")
    question = payload.get("question")
    if result is not None:
        text = result if isinstance(result, str) else json.dumps(result)
    elif question is not None:
        text = question if isinstance(question, str) else json.dumps(question)
    else:
        text = raw_text

    metadata = _metadata_of(record)
    metadata.update(
        {
            "isToolRequest": True,
            "tool": payload.get("tool"),
            "path": payload.get("path"),
            "approvalState": payload.get("approvalState"),
            "toolStatus": payload.get("status"),
            "error": payload.get("error"),
            "toolResult": result,
        }
    )
    return Message(
        text=text,
        timestamp=_resolve_timestamp(record),
        role="system",
        type="tool_response",
        metadata=metadata,
    )


def _build_content_blocks(record: Record) -> Message:
    blocks = record.get("content") or []
    if isinstance(blocks, str):
        text = blocks
    else:
        text = "\n".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    return Message(
        text=text,
        timestamp=_resolve_timestamp(record),
        role=_role_of(record),
        type="text",
        metadata=_metadata_of(record),
    )


def _build_passthrough(record: Record) -> Message:
    msg_type = record.get("type")
    return Message(
        text=_text_of(record),
        timestamp=_resolve_timestamp(record),
        role=_role_of(record),
        type=msg_type if msg_type in MESSAGE_TYPES else "text",
        metadata=_metadata_of(record),
        is_error=record.get("isError") is True,
        error_text=_error_text_of(record),
    )


RULES: List[Rule] = [
    ("error", lambda r: r.get("isError") is True, _build_error),
    ("say_text", lambda r: r.get("type") == "say" and r.get("say") == "text", _build_say_text),
    (
        "api_request",
        lambda r: r.get("type") == "say" and r.get("say") == "api_req_started",
        _build_api_request,
    ),
    ("tool", lambda r: r.get("type") == "ask" and r.get("ask") == "tool", _build_tool_response),
    ("content_blocks", lambda r: isinstance(r.get("content"), list), _build_content_blocks),
    ("text", lambda r: isinstance(r.get("text"), str), _build_passthrough),
    # API turns may carry a plain string body
    ("content_string", lambda r: isinstance(r.get("content"), str), _build_content_blocks),
]


class MessageNormalizer:
    """Normalize raw records through :data:`RULES` with memoization.

    Attributes:
        cache (NormalizationCache): The shared result cache.
        rules (List[Rule]): The ordered decision table.
    """

    def __init__(self, cache: Optional[NormalizationCache] = None, cache_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.cache = cache if cache is not None else NormalizationCache(cache_size)
        self.rules: List[Rule] = list(RULES)

    def normalize(self, record: Union[Record, Message, None]) -> Optional[Message]:
        """Return the canonical message for ``record``, or None if unsupported.

        Args:
            record: A raw record dict, or an already canonical :class:`Message`.

        Returns:
            Optional[Message]: The message, or None for dropped records.
        """
        if isinstance(record, Message):
            record = record.to_dict()
        if not isinstance(record, dict):
            return None

        key = record_key(record)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached

        for name, predicate, build in self.rules:
            if predicate(record):
                message = build(record)
                if message is None:
                    return None
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Record matched rule %s -> %s/%s", name, message.type, message.role)
                return self.cache.insert(key, message)

        logger.debug("Dropping unsupported record (keys: %s)", sorted(record))
        return None

    def normalize_batch(self, records: Iterable[Any]) -> List[Message]:
        """Normalize a batch, skipping dropped records.

        A record that raises during normalization is logged and skipped; the
        rest of the batch is still returned.
        """
        messages: List[Message] = []
        for record in records:
            try:
                message = self.normalize(record)
            except Exception as e:
                logger.warning("Skipping record that failed normalization: %s", e)
                continue
            if message is not None:
                messages.append(message)
        return messages

    def __repr__(self) -> str:
        return f"<MessageNormalizer rules={len(self.rules)} cache={self.cache!r}>"
