"""Path string helpers shared by the server and the client.

All helpers work on plain strings and use ``/`` as the canonical separator,
so keys built on Windows and POSIX hosts compare equal. Nothing here touches
the filesystem.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

__all__ = [
    "normalize_path",
    "join_path",
    "get_parent_path",
    "get_base_name",
    "validate_path_string",
    "is_sub_path",
    "make_session_key",
]

_MULTI_SLASH = re.compile(r"/+")
_INVALID_CHARS = re.compile(r'[<>"|?*]')
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def normalize_path(path: Optional[str]) -> str:
    """Return ``path`` with forward slashes, no repeats and no trailing slash.

    The filesystem root (``/``) is preserved.

    Example:
        >>> normalize_path("/var//log/task/")
        '/var/log/task'
        >>> normalize_path("/")
        '/'
    """
    if not path:
        return ""
    normalized = _MULTI_SLASH.sub("/", path.replace("\\", "/"))
    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def join_path(*segments: Optional[str]) -> str:
    """Join path segments, skipping empty ones.

    Slashes at segment boundaries are collapsed. A leading slash on the first
    non-empty segment is kept so absolute paths stay absolute.

    Example:
        >>> join_path("/var/log/", "", "/task-1/")
        '/var/log/task-1'
    """
    parts = [normalize_path(s) for s in segments if s]
    parts = [p for p in parts if p]
    if not parts:
        return ""
    absolute = parts[0].startswith("/")
    stripped = [p.strip("/") for p in parts]
    joined = "/".join(p for p in stripped if p)
    return "/" + joined if absolute else joined


def get_parent_path(path: Optional[str]) -> str:
    """Return everything before the last separator ('' when there is none)."""
    if not path:
        return ""
    normalized = normalize_path(path)
    index = normalized.rfind("/")
    if index == -1:
        return ""
    if index == 0:
        return "/"
    return normalized[:index]


def get_base_name(path: Optional[str]) -> str:
    """Return the final path component."""
    if not path:
        return ""
    normalized = normalize_path(path)
    return normalized[normalized.rfind("/") + 1:]


def validate_path_string(path: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Check a user-supplied path string before it is used.

    Returns:
        Tuple[bool, Optional[str]]: ``(True, None)`` when valid, else
        ``(False, reason)``.
    """
    if not path:
        return False, "Path is required"

    # A drive letter colon is the only colon allowed
    body = _DRIVE_PREFIX.sub("", path, count=1)
    if _INVALID_CHARS.search(body) or ":" in body:
        return False, "Path contains invalid characters"

    if any(ord(ch) < 32 for ch in path):
        return False, "Path contains control characters"

    if "../" in path or "..\\" in path:
        return False, "Path cannot contain relative traversal"

    return True, None


def is_sub_path(parent_path: str, child_path: str) -> bool:
    """Return True if ``child_path`` lies strictly below ``parent_path``."""
    parent = normalize_path(parent_path)
    child = normalize_path(child_path)
    if parent == "/":
        return child.startswith("/") and child != "/"
    return child.startswith(parent + "/")


def make_session_key(base_path: str, task_folder: Optional[str] = None) -> str:
    """Build the canonical watch-session key for a base path and task folder."""
    return normalize_path(join_path(base_path, task_folder))
