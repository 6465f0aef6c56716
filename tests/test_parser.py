"""Tests for bisync_watch.parser module."""

import datetime as dt
import json

from bisync_watch.models import (
    AlreadyRunning,
    DriveNotMounted,
    ErrorMessage,
    FileChanged,
    Operation,
    Stats,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
    Unknown,
)
from bisync_watch.parser import parse_line
from bisync_watch.patterns import UNKNOWN_EXIT_CODE


def record(**fields):
    fields.setdefault("time", "2024-05-01T10:00:00.123456789+02:00")
    fields.setdefault("level", "info")
    fields.setdefault("msg", "")
    return json.dumps(fields)


class TestPlainLines:
    """Tests for timestamp-prefixed wrapper markers."""

    def test_sync_started(self):
        """Start marker yields SyncStarted with the line's timestamp."""
        ev = parse_line("2024-05-01 10:00:00 - Starting bisync for Docs")
        assert isinstance(ev.kind, SyncStarted)
        assert ev.timestamp == dt.datetime(2024, 5, 1, 10, 0, 0)

    def test_sync_completed(self):
        """Completion marker yields SyncCompleted."""
        ev = parse_line("2024-05-01 10:05:00 - Bisync completed successfully")
        assert isinstance(ev.kind, SyncCompleted)

    def test_sync_failed_with_code(self):
        """Failure marker carries the exit code."""
        ev = parse_line("2024-05-01 10:05:00 - Bisync failed with exit code 7")
        assert ev.kind == SyncFailed(exit_code=7)

    def test_sync_failed_without_code_uses_sentinel(self):
        """A failure phrase with no number gets the sentinel code."""
        ev = parse_line("2024-05-01 10:05:00 - Bisync aborted")
        assert ev.kind == SyncFailed(exit_code=UNKNOWN_EXIT_CODE)

    def test_transient_failure_is_unknown(self):
        """The first-run baseline failure is not reported as a failure."""
        ev = parse_line("2024-05-01 10:05:00 - Bisync failed with exit code 2: all files were changed")
        assert isinstance(ev.kind, Unknown)

    def test_drive_not_mounted(self):
        """Drive marker yields DriveNotMounted."""
        ev = parse_line("2024-05-01 10:05:00 - Drive not mounted: /Volumes/Backup")
        assert isinstance(ev.kind, DriveNotMounted)

    def test_already_running(self):
        """Already-running marker yields AlreadyRunning."""
        ev = parse_line("2024-05-01 10:05:00 - Sync already running (pid 123)")
        assert isinstance(ev.kind, AlreadyRunning)

    def test_case_insensitive(self):
        """Phrase matching ignores case."""
        ev = parse_line("2024-05-01 10:05:00 - STARTING BISYNC")
        assert isinstance(ev.kind, SyncStarted)

    def test_unmatched_message_is_unknown(self):
        """A well-formed line with no known phrase yields Unknown."""
        ev = parse_line("2024-05-01 10:05:00 - Checking remote")
        assert isinstance(ev.kind, Unknown)

    def test_keeps_raw_line(self):
        """The raw line is kept for diagnostics."""
        line = "2024-05-01 10:05:00 - Checking remote"
        assert parse_line(line).raw_line == line

    def test_strips_ansi(self):
        """ANSI colour codes are removed before matching."""
        ev = parse_line("\x1b[32m2024-05-01 10:00:00 - Starting bisync\x1b[0m")
        assert isinstance(ev.kind, SyncStarted)


class TestRejectedLines:
    """Lines that yield no event."""

    def test_no_timestamp(self):
        """Plain text without the timestamp prefix is ignored."""
        assert parse_line("Starting bisync") is None

    def test_wrong_separator(self):
        """Timestamp with the wrong separator is ignored."""
        assert parse_line("2024-05-01 10:00:00 : Starting bisync") is None

    def test_empty(self):
        """Blank lines yield nothing."""
        assert parse_line("") is None
        assert parse_line("   ") is None

    def test_invalid_json(self):
        """A brace-wrapped line that is not JSON yields nothing."""
        assert parse_line("{not json}") is None

    def test_json_without_level(self):
        """JSON records must carry level and msg."""
        assert parse_line(json.dumps({"msg": "hello"})) is None

    def test_non_string_input(self):
        """Non-string input never raises."""
        assert parse_line(None) is None


class TestJsonRecords:
    """Tests for structured engine records."""

    def test_error_level(self):
        """level=error yields a cleaned ErrorMessage."""
        ev = parse_line(record(level="error", msg="Bisync critical error: cannot find prior Path1 listing"))
        assert ev.kind == ErrorMessage("cannot find prior Path1 listing")

    def test_error_is_truncated(self):
        """Long error messages are capped at 200 characters plus an ellipsis."""
        ev = parse_line(record(level="error", msg="x" * 500))
        assert isinstance(ev.kind, ErrorMessage)
        assert len(ev.kind.text) == 203
        assert ev.kind.text.endswith("...")

    def test_time_with_nanoseconds(self):
        """RFC3339 timestamps with nanoseconds are parsed."""
        ev = parse_line(record(msg="hello"))
        assert ev.timestamp.year == 2024
        assert ev.timestamp.microsecond == 123456

    def test_time_with_zulu(self):
        """A trailing Z is accepted as UTC."""
        ev = parse_line(record(time="2024-05-01T10:00:00Z", msg="hello"))
        assert ev.timestamp.utcoffset() == dt.timedelta(0)

    def test_bad_time_falls_back(self):
        """An unparsable time still yields an event."""
        ev = parse_line(record(time="yesterday", msg="hello"))
        assert isinstance(ev.kind, Unknown)
        assert isinstance(ev.timestamp, dt.datetime)

    def test_file_copied_new(self):
        """object + 'Copied (new)' is a create."""
        ev = parse_line(record(msg="Copied (new)", object="Photos/cat.jpg"))
        assert isinstance(ev.kind, FileChanged)
        assert ev.kind.change.operation is Operation.CREATE
        assert ev.kind.change.path == "Photos/cat.jpg"
        assert ev.kind.change.file_name == "cat.jpg"
        assert ev.kind.change.directory == "Photos"

    def test_file_copied_replace(self):
        """object + 'Copied (replaced existing)' is a modify."""
        ev = parse_line(record(msg="Copied (replaced existing)", object="a.txt"))
        assert ev.kind.change.operation is Operation.MODIFY

    def test_file_deleted(self):
        """object + 'Deleted' is a delete."""
        ev = parse_line(record(msg="Deleted", object="old/a.txt"))
        assert ev.kind.change.operation is Operation.DELETE

    def test_failed_copy_is_error_not_change(self):
        """A failure naming a file is an error, not a file change."""
        ev = parse_line(record(level="error", msg="Failed to copy: permission denied", object="a.txt"))
        assert isinstance(ev.kind, ErrorMessage)

    def test_listing_form(self):
        """The bisync listing line yields a file change."""
        ev = parse_line(record(msg="- Path1    File was deleted          - Docs/report.pdf"))
        assert isinstance(ev.kind, FileChanged)
        assert ev.kind.change.operation is Operation.DELETE
        assert ev.kind.change.path == "Docs/report.pdf"

    def test_listing_new_and_changed(self):
        """Listing 'new' is a create and 'newer' is a modify."""
        new = parse_line(record(msg="- Path2    File is new               - b.txt"))
        newer = parse_line(record(msg="- Path1    File is newer             - c.txt"))
        assert new.kind.change.operation is Operation.CREATE
        assert newer.kind.change.operation is Operation.MODIFY

    def test_stats(self):
        """A stats payload yields progress."""
        stats = {
            "bytes": 500,
            "totalBytes": 1000,
            "speed": 250.0,
            "eta": 2,
            "transfers": 1,
            "totalTransfers": 3,
            "checks": 4,
            "totalChecks": 9,
            "transferring": [{"name": "dir/big.iso", "size": 900, "bytes": 450, "percentage": 50}],
        }
        ev = parse_line(record(msg="stats", stats=stats))
        assert isinstance(ev.kind, Stats)
        p = ev.kind.progress
        assert p.bytes_transferred == 500
        assert p.total_bytes == 1000
        assert p.percentage == 50.0
        assert p.transfers_done == 1
        assert p.total_checks == 9
        assert p.transferring[0].file_name == "big.iso"
        assert p.transferring[0].percentage == 50

    def test_file_change_outranks_stats(self):
        """A record with both a file operation and stats is a file change."""
        ev = parse_line(record(msg="Copied (new)", object="a.txt", stats={"bytes": 1}))
        assert isinstance(ev.kind, FileChanged)

    def test_stats_outranks_error_level(self):
        """Stats win over level=error."""
        ev = parse_line(record(level="error", msg="stats", stats={"bytes": 1}))
        assert isinstance(ev.kind, Stats)

    def test_failure_phrase_in_message(self):
        """A non-error record with failure wording is a SyncFailed."""
        ev = parse_line(record(level="notice", msg="Bisync aborted. exit code: 2"))
        assert isinstance(ev.kind, SyncFailed)
        assert ev.kind.exit_code == 2
        assert ev.kind.message == "Bisync aborted. exit code: 2"

    def test_transient_failure_in_message(self):
        """Failure wording with the transient phrase is Unknown."""
        ev = parse_line(record(level="notice", msg="Failed to bisync: all files were changed"))
        assert isinstance(ev.kind, Unknown)

    def test_plain_notice_is_unknown(self):
        """Other records are Unknown."""
        ev = parse_line(record(level="notice", msg="Path1 checking for diffs"))
        assert isinstance(ev.kind, Unknown)
