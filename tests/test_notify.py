"""Tests for bisync_watch.notify module."""

import logging

from bisync_watch.models import Operation
from bisync_watch.notify import LogNotifier, Notification, NotificationBatcher
from conftest import change, wait_for


class TestBatching:
    """Tests for coalescing file-change notices."""

    def test_window_coalesces_changes(self, notifier):
        """Changes within the window produce one summary."""
        batcher = NotificationBatcher(notifier, window_sec=0.2)
        for i in range(5):
            batcher.file_changed("p1", change(f"f{i}.txt"))
        assert wait_for(lambda: notifier.of_kind("changes"), timeout=5)
        batcher.close()

        summaries = notifier.of_kind("changes")
        assert len(summaries) == 1
        assert summaries[0].body == "5 files synced"
        assert len(summaries[0].changes) == 5

    def test_itemized_when_three_or_fewer(self, notifier):
        """Up to three changes are listed one per line."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.file_changed("p1", change("a.txt", Operation.DELETE))
        batcher.file_changed("p1", change("dir/b.txt", Operation.MODIFY))
        flushed = batcher.sync_completed("p1")
        assert len(flushed) == 2
        assert notifier.of_kind("changes")[0].body == "Deleted: a.txt\nUpdated: b.txt"

    def test_sync_started_clears_buffer(self, notifier):
        """A new sync drops anything still buffered and announces itself."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.file_changed("p1", change("stale.txt"))
        batcher.sync_started("p1")
        assert batcher.pending("p1") == []
        assert notifier.kinds() == ["started"]
        assert batcher.sync_completed("p1") == []

    def test_profiles_are_independent(self, notifier):
        """Each profile keeps its own buffer."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.file_changed("p1", change("a.txt"))
        batcher.file_changed("p2", change("b.txt"))
        assert len(batcher.sync_completed("p1")) == 1
        assert len(batcher.pending("p2")) == 1
        batcher.close()

    def test_directory_points_into_root(self, notifier):
        """The summary carries the directory of the first change under the root."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.set_profile_info("p1", "Docs", "/data/docs")
        batcher.file_changed("p1", change("photos/cat.jpg"))
        batcher.sync_completed("p1")
        note = notifier.of_kind("changes")[0]
        assert note.directory == "/data/docs/photos"
        assert note.title == "bisync-watch (Docs)"

    def test_dispatch_runs_timer_flush(self, notifier):
        """Timer flushes go through the dispatch callable."""
        calls = []

        def dispatch(fn):
            calls.append(fn)
            fn()

        batcher = NotificationBatcher(notifier, window_sec=0.05, dispatch=dispatch)
        batcher.file_changed("p1", change("a.txt"))
        assert wait_for(lambda: notifier.of_kind("changes"), timeout=5)
        assert len(calls) == 1


class TestMuting:
    """Tests for per-profile mute."""

    def test_mute_silences_summaries_only(self, notifier):
        """Muted profiles get no change summaries but still get errors."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.sync_started("p1")
        batcher.set_muted("p1", True)
        batcher.file_changed("p1", change("a.txt"))
        flushed = batcher.sync_failed("p1", "Sync failed: boom")
        assert len(flushed) == 1
        assert notifier.kinds() == ["started", "error"]

    def test_mute_clears_when_sync_ends(self, notifier):
        """Mute lasts until the current sync ends."""
        batcher = NotificationBatcher(notifier, window_sec=60)
        batcher.set_muted("p1", True)
        batcher.sync_completed("p1")
        assert batcher.is_muted("p1") is False


class TestDriveNotice:
    """Tests for the once-per-cycle drive notice."""

    def test_once_until_reset(self, notifier):
        """The drive notice repeats only after a reset."""
        batcher = NotificationBatcher(notifier)
        assert batcher.drive_not_mounted("p1") is True
        assert batcher.drive_not_mounted("p1") is False
        batcher.reset_drive_notice("p1")
        assert batcher.drive_not_mounted("p1") is True


class TestSinks:
    """Tests for notification sinks."""

    def test_failing_sink_is_contained(self):
        """A sink that raises does not break the batcher."""

        class Broken:
            def send(self, notification):
                raise RuntimeError("nope")

        batcher = NotificationBatcher(Broken())
        batcher.sync_started("p1")
        assert batcher.sync_completed("p1") == []

    def test_log_notifier(self, caplog):
        """LogNotifier writes a NOTIFY line, at ERROR when critical."""
        log = logging.getLogger("test.notify")
        sink = LogNotifier(log)
        with caplog.at_level(logging.INFO, logger="test.notify"):
            sink.send(Notification("error", "bisync-watch", "line one\nline two", critical=True))
        assert caplog.records[-1].levelno == logging.ERROR
        assert caplog.records[-1].getMessage() == "NOTIFY | bisync-watch: line one; line two"
