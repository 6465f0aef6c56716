"""
Log line parser.

``parse_line(line)`` turns one line of an engine log into a ParsedEvent, or None
when the line is not something we understand. It never raises.

Two dialects may be interleaved in one file:
- JSON records, one per line: {"time", "level", "msg", "object"?, "stats"?, ...}
- plain markers written by the wrapper script: "YYYY-MM-DD HH:MM:SS - <message>"
"""

from __future__ import annotations

import datetime as dt
import json
import re
from typing import Any, Optional

from bisync_watch import patterns
from bisync_watch.models import (
    AlreadyRunning,
    DriveNotMounted,
    ErrorMessage,
    FileChange,
    FileChanged,
    Operation,
    ParsedEvent,
    Stats,
    SyncCompleted,
    SyncFailed,
    SyncProgress,
    SyncStarted,
    TransferringFile,
    Unknown,
)

PLAIN_LINE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) - (.+)$")
PLAIN_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# "- Path1    File was deleted          - KAIJU/file.mp4"
LISTING_CHANGE_RE = re.compile(r"- Path[12]\s+(.+?)\s+-\s+(.+)$")


# -------------------------
# Structured records
# -------------------------

def _parse_time(value: Any) -> Optional[dt.datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat on older interpreters accepts at most 6 fractional digits
    m = re.match(r"^(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)$", text)
    if m:
        text = f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}{m.group(3)}"
    try:
        return dt.datetime.fromisoformat(text)
    except ValueError:
        return None


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _operation_from_message(message: str) -> Optional[Operation]:
    lowered = message.lower()
    # "Failed to copy: ..." names a file but reports an error
    if "fail" in lowered or "error" in lowered:
        return None
    if "copied" in lowered or "copy" in lowered:
        return Operation.CREATE if "new" in lowered else Operation.MODIFY
    if "deleted" in lowered or "delete" in lowered:
        return Operation.DELETE
    if "renamed" in lowered or "rename" in lowered or "moved" in lowered:
        return Operation.RENAME
    if "updated" in lowered or "update" in lowered:
        return Operation.MODIFY
    return None


def _listing_change(message: str, when: dt.datetime) -> Optional[FileChange]:
    m = LISTING_CHANGE_RE.search(message)
    if not m:
        return None
    op_text = m.group(1).lower()
    path = m.group(2).strip().strip('"')
    if not path:
        return None
    if "deleted" in op_text:
        op = Operation.DELETE
    elif "changed" in op_text or "newer" in op_text or "older" in op_text:
        op = Operation.MODIFY
    elif "new" in op_text:
        op = Operation.CREATE
    else:
        return None
    return FileChange(operation=op, path=path, timestamp=when)


def _file_change(record: dict[str, Any], message: str, when: dt.datetime) -> Optional[FileChange]:
    obj = record.get("object")
    if isinstance(obj, str) and obj:
        op = _operation_from_message(message)
        if op is not None:
            return FileChange(operation=op, path=obj, timestamp=when)
    return _listing_change(message, when)


def _transferring(items: Any) -> tuple[TransferringFile, ...]:
    if not isinstance(items, list):
        return ()
    files = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name:
            continue
        files.append(
            TransferringFile(
                name=name,
                size=_opt_int(item.get("size")),
                bytes=_opt_int(item.get("bytes")),
                percentage=_opt_int(item.get("percentage")),
                speed=_opt_float(item.get("speed")),
                speed_avg=_opt_float(item.get("speedAvg")),
                eta=_opt_int(item.get("eta")),
            )
        )
    return tuple(files)


def _progress(stats: Any) -> Optional[SyncProgress]:
    if not isinstance(stats, dict):
        return None
    return SyncProgress(
        bytes_transferred=_opt_int(stats.get("bytes")) or 0,
        total_bytes=_opt_int(stats.get("totalBytes")) or 0,
        speed=_opt_float(stats.get("speed")),
        eta=_opt_int(stats.get("eta")),
        transfers_done=_opt_int(stats.get("transfers")) or 0,
        total_transfers=_opt_int(stats.get("totalTransfers")) or 0,
        checks_done=_opt_int(stats.get("checks")) or 0,
        total_checks=_opt_int(stats.get("totalChecks")) or 0,
        elapsed_time=_opt_float(stats.get("elapsedTime")),
        errors=_opt_int(stats.get("errors")) or 0,
        transferring=_transferring(stats.get("transferring")),
    )


def _parse_json_line(line: str) -> Optional[ParsedEvent]:
    try:
        record = json.loads(line)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None

    level = record.get("level")
    msg = record.get("msg")
    if not isinstance(level, str) or not isinstance(msg, str):
        return None

    when = _parse_time(record.get("time")) or dt.datetime.now()
    message = patterns.strip_ansi(msg)

    change = _file_change(record, message, when)
    if change is not None:
        return ParsedEvent(FileChanged(change), when, line)

    progress = _progress(record.get("stats"))
    if progress is not None:
        return ParsedEvent(Stats(progress), when, line)

    if level.lower() == "error":
        return ParsedEvent(ErrorMessage(patterns.clean_error_message(message)), when, line)

    if patterns.is_sync_failed(message):
        if patterns.is_transient_failure(message):
            return ParsedEvent(Unknown(), when, line)
        code = patterns.extract_exit_code(message)
        if code is None:
            code = patterns.UNKNOWN_EXIT_CODE
        return ParsedEvent(SyncFailed(exit_code=code, message=message), when, line)

    return ParsedEvent(Unknown(), when, line)


# -------------------------
# Plain markers
# -------------------------

def _classify_plain(message: str):
    if patterns.is_sync_started(message):
        return SyncStarted()
    if patterns.is_sync_completed(message):
        return SyncCompleted()
    if patterns.is_sync_failed(message):
        if patterns.is_transient_failure(message):
            return Unknown()
        code = patterns.extract_exit_code(message)
        if code is None:
            code = patterns.UNKNOWN_EXIT_CODE
        return SyncFailed(exit_code=code)
    if patterns.is_drive_not_mounted(message):
        return DriveNotMounted()
    if patterns.is_already_running(message):
        return AlreadyRunning()
    return Unknown()


def _parse_plain_line(line: str) -> Optional[ParsedEvent]:
    m = PLAIN_LINE_RE.match(line)
    if not m:
        return None
    try:
        when = dt.datetime.strptime(m.group(1), PLAIN_TIME_FORMAT)
    except ValueError:
        when = dt.datetime.now()
    return ParsedEvent(_classify_plain(m.group(2)), when, line)


def parse_line(line: str) -> Optional[ParsedEvent]:
    if not isinstance(line, str):
        return None
    clean = patterns.strip_ansi(line).strip()
    if not clean:
        return None
    if clean.startswith("{") and clean.endswith("}"):
        return _parse_json_line(clean)
    return _parse_plain_line(clean)
