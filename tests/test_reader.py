from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Tuple

import pytest
from _pytest.logging import LogCaptureFixture

from assistant_log_watcher.errors import ParseError, ReadError
from assistant_log_watcher.paths import normalize_path
from assistant_log_watcher.reader import (
    API_HISTORY_FILE,
    CLAUDE_MESSAGES_FILE,
    LAST_UPDATED_FILE,
    LogReader,
)


@pytest.fixture
def reader() -> LogReader:
    return LogReader()


def test_validate_success(reader: LogReader, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    result = reader.validate(str(base), task)

    assert result.success
    assert result.error is None
    assert result.key == normalize_path(str(base / task))
    assert len(result.files) == 3
    assert result.to_dict() == {"success": True}


@pytest.mark.parametrize("base,task", [("", "task"), (None, "task"), ("/tmp", ""), ("/tmp", None)])
def test_validate_requires_both_parts(reader: LogReader, base: str, task: str) -> None:
    result = reader.validate(base, task)
    assert not result.success
    assert result.error == "Both base path and task folder are required"


def test_validate_missing_file(reader: LogReader, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    (base / task / LAST_UPDATED_FILE).unlink()

    result = reader.validate(str(base), task)

    assert not result.success
    assert result.error == "One or more required files are missing or inaccessible"
    assert result.to_dict() == {"success": False, "error": result.error}


def test_validate_rejects_files_outside_task_folder(reader: LogReader, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    (base / "shared.json").write_text("[]", encoding="utf-8")

    result = reader.validate(str(base), task, [CLAUDE_MESSAGES_FILE, "../shared.json"])

    assert not result.success
    assert result.error == "Required files must be inside the task folder"
    assert normalize_path(str(base / "shared.json")) in result.files


def test_validate_tolerates_malformed_json(reader: LogReader, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    (base / task / CLAUDE_MESSAGES_FILE).write_text("{not json", encoding="utf-8")
    assert reader.validate(str(base), task).success


def test_malformed_content_reads_as_empty_list(
    reader: LogReader, temp_dir: Path, caplog: LogCaptureFixture
) -> None:
    f = temp_dir / CLAUDE_MESSAGES_FILE
    f.write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.ERROR):
        records = reader.read_records(str(f))

    assert records == []
    errors = [r for r in caplog.records if "Error reading messages" in r.getMessage()]
    assert len(errors) == 1
    assert "Malformed JSON" in errors[0].getMessage()


@pytest.mark.parametrize(
    "content,message",
    [
        ("{not json", "Malformed JSON"),
        ("", "Empty content"),
        ("   \n", "Empty content"),
        ('{"items": []}', "not a message list"),
        ("42", "not a message list"),
        ('{"messages": "nope"}', "not a message list"),
    ],
)
def test_strict_read_raises_parse_error(reader: LogReader, temp_dir: Path, content: str, message: str) -> None:
    f = temp_dir / API_HISTORY_FILE
    f.write_text(content, encoding="utf-8")
    with pytest.raises(ParseError, match=message):
        reader.read_records(str(f), strict=True)


def test_strict_read_missing_file_raises_read_error(reader: LogReader, temp_dir: Path) -> None:
    with pytest.raises(ReadError):
        reader.read_records(str(temp_dir / "absent.json"), strict=True)
    assert reader.read_records(str(temp_dir / "absent.json")) == []


def test_directory_is_not_readable(reader: LogReader, temp_dir: Path) -> None:
    with pytest.raises(ReadError, match="Not a regular file"):
        reader.read_text(str(temp_dir))


@pytest.mark.parametrize(
    "content,expected",
    [
        ('[{"text": "a"}]', [{"text": "a"}]),
        ('{"messages": [{"text": "b"}]}', [{"text": "b"}]),
        ("\ufeff[{\"text\": \"c\"}]", [{"text": "c"}]),
    ],
    ids=["array", "messages object", "bom"],
)
def test_read_records_shapes(reader: LogReader, temp_dir: Path, content: str, expected: List[dict]) -> None:
    f = temp_dir / CLAUDE_MESSAGES_FILE
    f.write_text(content, encoding="utf-8")
    assert reader.read_records(str(f)) == expected


def test_oversized_file_is_truncated(temp_dir: Path, caplog: LogCaptureFixture) -> None:
    reader = LogReader(max_file_size=10)
    f = temp_dir / CLAUDE_MESSAGES_FILE
    f.write_text('[{"text": "far too long for the cap"}]', encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        assert reader.read_records(str(f)) == []
    assert "too large" in caplog.text


def test_read_messages_by_source(
    reader: LogReader,
    task_dir: Tuple[Path, str],
    sample_claude_records: List[dict],
    sample_api_records: List[dict],
) -> None:
    base, task = task_dir
    assert reader.read_messages(str(base), task, "claude") == sample_claude_records
    assert reader.read_messages(str(base), task, "api") == sample_api_records
    with pytest.raises(ValueError, match="Unknown message source"):
        reader.read_messages(str(base), task, "ui")


def test_read_last_updated(reader: LogReader, task_dir: Tuple[Path, str]) -> None:
    base, task = task_dir
    assert reader.read_last_updated(str(base), task) == "1718000000200"


def test_invalid_utf8_raises_read_error(reader: LogReader, temp_dir: Path) -> None:
    f = temp_dir / LAST_UPDATED_FILE
    f.write_bytes(b"\xff\xfe\xfa")
    with pytest.raises(ReadError, match="Encoding error"):
        reader.read_text(str(f))


def test_list_subfolders_newest_first(reader: LogReader, temp_dir: Path) -> None:
    for name in ("1718000000000", "1719000000000", "1717000000000"):
        (temp_dir / name).mkdir()
    (temp_dir / "notes.txt").write_text("not a folder")

    result = reader.list_subfolders(str(temp_dir))

    assert result.success
    assert result.folders == ["1719000000000", "1718000000000", "1717000000000"]


def test_list_subfolders_errors(reader: LogReader, temp_dir: Path) -> None:
    assert reader.list_subfolders("").error == "No path provided"
    result = reader.list_subfolders(str(temp_dir / "missing"))
    assert not result.success
    assert result.error.startswith("Failed to get subfolders")
