"""
Per-profile state machine.

    NotConfigured -> Idle <-> Syncing -> Idle | Error | DriveNotMounted
    DriveNotMounted <-> Idle            (volume mount / unmount)
    Error -> Idle                       (user recovery or a later successful sync)

Not thread-safe: the Supervisor drives every instance from its single actor thread.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from bisync_watch import patterns
from bisync_watch.logsetup import log_action
from bisync_watch.models import (
    AlreadyRunning,
    DriveNotMounted,
    ErrorMessage,
    FileChange,
    FileChanged,
    ParsedEvent,
    ProfileStatus,
    StatusKind,
    Stats,
    SyncCompleted,
    SyncFailed,
    SyncProgress,
    SyncStarted,
)
from bisync_watch.notify import NotificationBatcher

logger = logging.getLogger(__name__)


class ProfileStateMachine:
    def __init__(
        self,
        profile_id: str,
        batcher: NotificationBatcher,
        *,
        name: str = "",
        initial: Optional[ProfileStatus] = None,
    ):
        self.profile_id = profile_id
        self.name = name or profile_id
        self.batcher = batcher
        self.status: ProfileStatus = initial or ProfileStatus.idle()
        self.last_error: Optional[str] = None
        self.progress: Optional[SyncProgress] = None
        self.last_sync: Optional[dt.datetime] = None
        self.current_changes: list[FileChange] = []
        self.last_batch: list[FileChange] = []

    def __repr__(self) -> str:
        return f"ProfileStateMachine({self.profile_id!r}, {self.status.kind.value})"

    def _set(self, status: ProfileStatus) -> bool:
        if status == self.status:
            return False
        logger.debug("[%s] %s -> %s", self.name, self.status.kind.value, status.kind.value)
        self.status = status
        return True

    # -------------------------
    # Parsed events
    # -------------------------

    def handle(self, event: ParsedEvent) -> bool:
        """Apply one parsed log event. Returns True if the status changed."""
        kind = event.kind

        if isinstance(kind, SyncStarted):
            return self._on_started()
        if isinstance(kind, SyncCompleted):
            return self._on_completed(event.timestamp)
        if isinstance(kind, SyncFailed):
            return self._on_failed(kind)
        if isinstance(kind, DriveNotMounted):
            return self.drive_unmounted()
        if isinstance(kind, FileChanged):
            self.current_changes.append(kind.change)
            self.batcher.file_changed(self.profile_id, kind.change)
            return False
        if isinstance(kind, Stats):
            self.progress = kind.progress
            return False
        if isinstance(kind, ErrorMessage):
            self._remember_error(kind.text)
            return False
        if isinstance(kind, AlreadyRunning):
            logger.debug("[%s] engine reported a run already in progress", self.name)
            return False
        # Unknown
        return False

    def _on_started(self) -> bool:
        self.last_error = None
        self.progress = None
        self.current_changes = []
        self.batcher.sync_started(self.profile_id)
        log_action(logger, "SYNC_START", f"[{self.name}] sync started")
        return self._set(ProfileStatus.syncing())

    def _on_completed(self, when: dt.datetime) -> bool:
        self.last_error = None
        self.progress = None
        self.last_sync = when
        self.last_batch = self.batcher.sync_completed(self.profile_id)
        count = len(self.current_changes)
        self.current_changes = []
        log_action(logger, "SYNC_DONE", f"[{self.name}] sync completed ({count} change(s))")
        return self._set(ProfileStatus.idle())

    def _on_failed(self, failure: SyncFailed) -> bool:
        self.progress = None
        if patterns.is_transient_failure(failure.message) or patterns.is_transient_failure(self.last_error):
            # first run against a fresh baseline; the engine recovers on its own
            self.last_error = None
            self.last_batch = self.batcher.sync_completed(self.profile_id)
            self.current_changes = []
            log_action(logger, "SYNC_DONE", f"[{self.name}] ignoring transient failure")
            return self._set(ProfileStatus.idle())

        if self.last_error is None and failure.message:
            self.last_error = patterns.clean_error_message(failure.message)
        message = self.last_error or f"Exit code {failure.exit_code}"

        self.last_batch = self.batcher.sync_failed(self.profile_id, f"Sync failed: {message}")
        self.current_changes = []
        log_action(logger, "SYNC_FAIL", f"[{self.name}] exit code {failure.exit_code}: {message}", level=logging.WARNING)
        return self._set(ProfileStatus.error(message))

    def _remember_error(self, text: str) -> None:
        if not text:
            return
        if self.last_error is None or patterns.actionable_rank(text) < patterns.actionable_rank(self.last_error):
            self.last_error = text

    # -------------------------
    # Direct transitions
    # -------------------------

    def drive_unmounted(self) -> bool:
        self.progress = None
        changed = self._set(ProfileStatus.drive_not_mounted())
        if self.batcher.drive_not_mounted(self.profile_id):
            log_action(logger, "DRIVE", f"[{self.name}] drive not mounted")
        return changed

    def drive_mounted(self) -> bool:
        self.batcher.reset_drive_notice(self.profile_id)
        if self.status.kind is StatusKind.DRIVE_NOT_MOUNTED:
            log_action(logger, "DRIVE", f"[{self.name}] drive mounted")
            return self._set(ProfileStatus.idle())
        return False

    def clear_error(self) -> bool:
        self.last_error = None
        if self.status.is_error:
            return self._set(ProfileStatus.idle())
        return False

    def fail(self, message: str) -> bool:
        """Surface an error that did not come from the log (e.g. engine not launchable)."""
        self.last_error = message
        self.progress = None
        log_action(logger, "SYNC_FAIL", f"[{self.name}] {message}", level=logging.WARNING)
        return self._set(ProfileStatus.error(message))

    def external_run_detected(self) -> bool:
        """An engine run started before we were watching is still going."""
        return self._set(ProfileStatus.syncing())

    def external_run_finished(self, error: Optional[str]) -> bool:
        if self.status.kind is not StatusKind.SYNCING:
            return False
        self.progress = None
        if error:
            self.last_error = error
            log_action(logger, "SYNC_FAIL", f"[{self.name}] earlier run failed: {error}", level=logging.WARNING)
            return self._set(ProfileStatus.error(error))
        log_action(logger, "SYNC_DONE", f"[{self.name}] earlier run finished")
        return self._set(ProfileStatus.idle())
