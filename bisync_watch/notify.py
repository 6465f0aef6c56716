"""
User-facing notifications.

The NotificationBatcher turns the per-file stream of a running sync into one
coalesced summary per quiet window (or per sync end), and sends the start / error /
drive notices straight through. Muting only silences the coalesced file summaries
and lasts until the current sync ends.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from bisync_watch.logsetup import log_action
from bisync_watch.models import FileChange

logger = logging.getLogger(__name__)

BATCH_WINDOW_SEC = 2.0
ITEMIZE_LIMIT = 3
APP_TITLE = "bisync-watch"


@dataclass(frozen=True)
class Notification:
    kind: str
    title: str
    body: str
    profile_id: Optional[str] = None
    critical: bool = False
    directory: Optional[str] = None
    changes: tuple[FileChange, ...] = field(default=())


class Notifier(Protocol):
    def send(self, notification: Notification) -> None:
        ...


class LogNotifier:
    """Default sink: notifications go to the log."""

    def __init__(self, logger_: Optional[logging.Logger] = None):
        self.logger = logger_ or logger

    def send(self, notification: Notification) -> None:
        level = logging.ERROR if notification.critical else logging.INFO
        body = notification.body.replace("\n", "; ")
        log_action(self.logger, "NOTIFY", f"{notification.title}: {body}", level=level)


Dispatch = Callable[[Callable[[], None]], None]


def _run_now(fn: Callable[[], None]) -> None:
    fn()


@dataclass
class _ProfileBatch:
    name: str = ""
    root: str = ""
    pending: list[FileChange] = field(default_factory=list)
    timer: Optional[threading.Timer] = None
    muted: bool = False
    drive_notified: bool = False


class NotificationBatcher:
    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        *,
        window_sec: float = BATCH_WINDOW_SEC,
        dispatch: Optional[Dispatch] = None,
    ):
        self.notifier = notifier or LogNotifier()
        self.window_sec = max(0.0, float(window_sec))
        self._dispatch = dispatch or _run_now
        self._profiles: dict[str, _ProfileBatch] = {}
        self._lock = threading.RLock()

    def _batch(self, profile_id: str) -> _ProfileBatch:
        batch = self._profiles.get(profile_id)
        if batch is None:
            batch = _ProfileBatch()
            self._profiles[profile_id] = batch
        return batch

    def _title(self, batch: _ProfileBatch) -> str:
        return f"{APP_TITLE} ({batch.name})" if batch.name else APP_TITLE

    def _send(self, notification: Notification) -> None:
        try:
            self.notifier.send(notification)
        except Exception:
            logger.exception("notification sink failed")

    def _cancel_timer(self, batch: _ProfileBatch) -> None:
        if batch.timer is not None:
            batch.timer.cancel()
            batch.timer = None

    # -------------------------
    # Profile bookkeeping
    # -------------------------

    def set_profile_info(self, profile_id: str, name: str = "", root: str = "") -> None:
        with self._lock:
            batch = self._batch(profile_id)
            batch.name = name
            batch.root = root

    def forget(self, profile_id: str) -> None:
        with self._lock:
            batch = self._profiles.pop(profile_id, None)
            if batch is not None:
                self._cancel_timer(batch)

    def close(self) -> None:
        with self._lock:
            for batch in self._profiles.values():
                self._cancel_timer(batch)

    def pending(self, profile_id: str) -> list[FileChange]:
        with self._lock:
            batch = self._profiles.get(profile_id)
            return list(batch.pending) if batch else []

    # -------------------------
    # Muting
    # -------------------------

    def set_muted(self, profile_id: str, muted: bool) -> None:
        with self._lock:
            self._batch(profile_id).muted = muted

    def is_muted(self, profile_id: str) -> bool:
        with self._lock:
            batch = self._profiles.get(profile_id)
            return bool(batch and batch.muted)

    # -------------------------
    # Sync lifecycle
    # -------------------------

    def sync_started(self, profile_id: str) -> None:
        with self._lock:
            batch = self._batch(profile_id)
            self._cancel_timer(batch)
            batch.pending.clear()
            self._send(Notification("started", self._title(batch), "Sync started...", profile_id=profile_id))

    def file_changed(self, profile_id: str, change: FileChange) -> None:
        with self._lock:
            batch = self._batch(profile_id)
            batch.pending.append(change)
            self._cancel_timer(batch)
            timer = threading.Timer(self.window_sec, self._on_timer, args=(profile_id,))
            timer.daemon = True
            batch.timer = timer
            timer.start()

    def sync_completed(self, profile_id: str) -> list[FileChange]:
        with self._lock:
            batch = self._batch(profile_id)
            self._cancel_timer(batch)
            flushed = self._flush(profile_id, batch)
            batch.muted = False
            return flushed

    def sync_failed(self, profile_id: str, message: str) -> list[FileChange]:
        with self._lock:
            batch = self._batch(profile_id)
            self._cancel_timer(batch)
            flushed = self._flush(profile_id, batch)
            batch.muted = False
            self._send(
                Notification(
                    "error",
                    f"{self._title(batch)} Error",
                    message,
                    profile_id=profile_id,
                    critical=True,
                )
            )
            return flushed

    def drive_not_mounted(self, profile_id: str) -> bool:
        """Send the drive notice once per mount cycle. Returns True if it was sent."""
        with self._lock:
            batch = self._batch(profile_id)
            if batch.drive_notified:
                return False
            batch.drive_notified = True
            self._send(
                Notification(
                    "drive",
                    self._title(batch),
                    "External drive not mounted. Sync paused.",
                    profile_id=profile_id,
                )
            )
            return True

    def reset_drive_notice(self, profile_id: str) -> None:
        with self._lock:
            self._batch(profile_id).drive_notified = False

    # -------------------------
    # Flushing
    # -------------------------

    def _on_timer(self, profile_id: str) -> None:
        timer = threading.current_thread()

        def flush_if_current() -> None:
            with self._lock:
                batch = self._profiles.get(profile_id)
                # superseded by a newer change or a sync end
                if batch is None or batch.timer is not timer:
                    return
                batch.timer = None
                self._flush(profile_id, batch)

        self._dispatch(flush_if_current)

    def _flush(self, profile_id: str, batch: _ProfileBatch) -> list[FileChange]:
        changes = list(batch.pending)
        batch.pending.clear()
        if not changes:
            return changes
        if batch.muted:
            logger.debug("Dropped %d change notice(s) for muted profile %s", len(changes), profile_id)
            return changes

        if len(changes) <= ITEMIZE_LIMIT:
            body = "\n".join(f"{c.operation.label}: {c.file_name}" for c in changes)
        else:
            body = f"{len(changes)} files synced"

        directory = None
        if batch.root:
            directory = os.path.join(batch.root, changes[0].directory.lstrip("/"))

        self._send(
            Notification(
                "changes",
                self._title(batch),
                body,
                profile_id=profile_id,
                directory=directory,
                changes=tuple(changes),
            )
        )
        return changes
