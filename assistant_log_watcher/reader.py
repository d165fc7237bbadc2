"""Filesystem collaborator: path validation, log reads and subfolder listing.

The assistant writes three files into every task folder:

* ``claude_messages.json``: UI-level messages (``say``/``ask`` records).
* ``api_conversation_history.json``: raw API turns (``role``/``content``).
* ``last_updated.txt``: a timestamp marker rewritten on every save.

Message files hold either a JSON array or an object with a ``messages`` array.
Malformed content never raises out of :meth:`LogReader.read_records`; it is
logged once and read as an empty list.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from assistant_log_watcher.errors import ParseError, ReadError
from assistant_log_watcher.paths import is_sub_path, join_path, make_session_key, normalize_path

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "CLAUDE_MESSAGES_FILE",
    "API_HISTORY_FILE",
    "LAST_UPDATED_FILE",
    "REQUIRED_FILES",
    "SOURCE_FILES",
    "LogReader",
    "SubfolderResult",
    "ValidationResult",
]

CLAUDE_MESSAGES_FILE = "claude_messages.json"
API_HISTORY_FILE = "api_conversation_history.json"
LAST_UPDATED_FILE = "last_updated.txt"
REQUIRED_FILES: Tuple[str, ...] = (CLAUDE_MESSAGES_FILE, API_HISTORY_FILE, LAST_UPDATED_FILE)

# Source label -> file name
SOURCE_FILES: Dict[str, str] = {
    "claude": CLAUDE_MESSAGES_FILE,
    "api": API_HISTORY_FILE,
}

MAX_FILE_SIZE_BYTES = 64 * 1024 * 1024  # 64 MB

if orjson:
    JSON_DECODE_EXCEPTIONS: Tuple[Type[Exception], ...] = (json.JSONDecodeError, orjson.JSONDecodeError)
    json_loads = orjson.loads
else:
    JSON_DECODE_EXCEPTIONS = (json.JSONDecodeError,)
    json_loads = json.loads


@dataclass
class ValidationResult:
    """Outcome of validating a base path and task folder.

    Attributes:
        success (bool): Whether every required file is present and readable.
        error (Optional[str]): Reason for failure.
        key (Optional[str]): The session key the paths resolve to.
        files (List[str]): Absolute paths of the required files.
    """

    success: bool
    error: Optional[str] = None
    key: Optional[str] = None
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}


@dataclass
class SubfolderResult:
    success: bool
    folders: List[str] = field(default_factory=list)
    error: Optional[str] = None


class LogReader:
    """Read assistant log files from disk.

    Attributes:
        max_file_size (int): Reads are truncated to this many bytes.
    """

    def __init__(self, max_file_size: int = MAX_FILE_SIZE_BYTES) -> None:
        self.max_file_size = max_file_size

    def resolve_files(
        self, base_path: str, task_folder: Optional[str], required_files: Sequence[str] = REQUIRED_FILES
    ) -> Tuple[str, List[str]]:
        """Return the session key and the absolute required-file paths."""
        key = make_session_key(os.path.abspath(base_path) if base_path else "", task_folder)
        return key, [normalize_path(os.path.normpath(join_path(key, name))) for name in required_files]

    def validate(
        self,
        base_path: Optional[str],
        task_folder: Optional[str],
        required_files: Sequence[str] = REQUIRED_FILES,
    ) -> ValidationResult:
        """Check that every required file exists and is readable.

        Message files are also parsed so malformed content shows up in the
        logs at validation time, but malformed content does not fail the
        validation.
        """
        if not base_path or not task_folder:
            logger.error("Missing base path or task folder for validation")
            return ValidationResult(False, "Both base path and task folder are required")

        key, files = self.resolve_files(base_path, task_folder, required_files)
        outside = [file_path for file_path in files if not is_sub_path(key, file_path)]
        if outside:
            logger.error("Required files outside %s: %s", key, ", ".join(outside))
            return ValidationResult(False, "Required files must be inside the task folder", key=key, files=files)

        logger.info("Validating path %s", key)

        missing: List[str] = []
        for file_path in files:
            try:
                self.read_text(file_path)
            except ReadError as e:
                logger.error("Error accessing file %s: %s", file_path, e)
                missing.append(file_path)
                continue
            if file_path.endswith(".json"):
                records = self.read_records(file_path)
                logger.debug("Parsed %s (%d records)", file_path, len(records))

        if missing:
            return ValidationResult(
                False,
                "One or more required files are missing or inaccessible",
                key=key,
                files=files,
            )
        return ValidationResult(True, key=key, files=files)

    def read_bytes(self, file_path: str) -> bytes:
        """Read a regular file, truncated to :attr:`max_file_size`.

        Raises:
            ReadError: The file is missing, not a regular file or unreadable.
        """
        path = Path(file_path)
        try:
            file_stat = path.stat()
            if not stat.S_ISREG(file_stat.st_mode):
                raise ReadError(f"Not a regular file: {file_path}")
            with path.open("rb") as f:
                content = f.read(self.max_file_size + 1)
        except ReadError:
            raise
        except OSError as e:
            raise ReadError(f"Failed to read {file_path}: {e}") from e

        if len(content) > self.max_file_size:
            logger.warning(
                "File %s is too large (> %d bytes). Truncating.", file_path, self.max_file_size
            )
            content = content[: self.max_file_size]
        return content

    def read_text(self, file_path: str) -> str:
        """Return the content of ``file_path`` as text.

        Raises:
            ReadError: The file cannot be read or is not valid UTF-8.
        """
        content = self.read_bytes(file_path)
        if content.startswith(b"\xef\xbb\xbf"):
            content = content[3:]
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ReadError(f"Encoding error in {file_path}: {e}") from e

    def parse_records(self, content: Any, source: str = "<memory>") -> List[Any]:
        """Parse message-file content into a list of raw records.

        Raises:
            ParseError: The content is not JSON, or not an array / ``{messages: [...]}``.
        """
        if isinstance(content, str):
            content = content.encode("utf-8")
        if content.startswith(b"\xef\xbb\xbf"):
            content = content[3:]
        if not content.strip():
            raise ParseError(f"Empty content in {source}")
        try:
            data = json_loads(content)
        except JSON_DECODE_EXCEPTIONS as e:
            raise ParseError(f"Malformed JSON in {source}: {e}") from e
        except RecursionError as e:
            raise ParseError(f"JSON recursion limit exceeded in {source}") from e

        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("messages"), list):
            return data["messages"]
        raise ParseError(f"JSON root is not a message list in {source}")

    def read_records(self, file_path: str, strict: bool = False) -> List[Any]:
        """Read a message file.

        Args:
            file_path (str): Absolute path of the message file.
            strict (bool): Raise instead of returning ``[]`` on failure.

        Returns:
            List[Any]: The raw records, or ``[]`` if the file is unreadable or
            malformed (non-strict mode). The failure is logged once.

        Raises:
            ReadError: Only in strict mode.
            ParseError: Only in strict mode.
        """
        try:
            records = self.parse_records(self.read_bytes(file_path), source=file_path)
        except (ReadError, ParseError) as e:
            if strict:
                raise
            logger.error("Error reading messages from %s: %s", file_path, e)
            return []
        logger.debug("Read %d records from %s", len(records), file_path)
        return records

    def read_messages(self, base_path: str, task_folder: str, source: str, strict: bool = False) -> List[Any]:
        """Read the raw records of a named source (``claude`` or ``api``)."""
        try:
            file_name = SOURCE_FILES[source]
        except KeyError:
            raise ValueError(f"Unknown message source: {source!r}") from None
        key, _ = self.resolve_files(base_path, task_folder, ())
        return self.read_records(join_path(key, file_name), strict=strict)

    def read_last_updated(self, base_path: str, task_folder: str) -> str:
        """Return the stripped content of the ``last_updated.txt`` marker.

        Raises:
            ReadError: The marker cannot be read.
        """
        key, _ = self.resolve_files(base_path, task_folder, ())
        return self.read_text(join_path(key, LAST_UPDATED_FILE)).strip()

    def list_subfolders(self, path: Optional[str]) -> SubfolderResult:
        """List the immediate subdirectories of ``path``.

        Task folders are named by creation time, so names are sorted in
        descending order (newest first).
        """
        if not path:
            return SubfolderResult(False, error="No path provided")
        base = normalize_path(path)
        try:
            with os.scandir(base) as entries:
                folders = [entry.name for entry in entries if entry.is_dir()]
        except OSError as e:
            logger.error("Error getting subfolders of %s: %s", base, e)
            return SubfolderResult(False, error=f"Failed to get subfolders: {e}")

        folders.sort(reverse=True)
        logger.info("Found %d subfolders in %s", len(folders), base)
        return SubfolderResult(True, folders=folders)
