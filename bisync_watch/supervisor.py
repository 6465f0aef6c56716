"""
Supervisor: owns every profile's watchers and state machine.

All mutation happens on one dispatcher thread that drains a message queue.
Watchdog callbacks, timers, lock pollers and engine runs never touch state
directly; they post a message. Public write methods post too, so they may be
called from any thread. Public read methods return values from the last
published snapshot.

Messages from a profile's watchers carry the generation of the WatcherHandle that
produced them; anything from a handle that has since been closed is dropped.
"""

from __future__ import annotations

import datetime as dt
import itertools
import logging
import os
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Iterable, Optional

from bisync_watch.config import AppConfig, Profile, ProfileStore, validate_profile, write_engine_config
from bisync_watch.dirwatch import DEFAULT_DEBOUNCE_SEC, DirectoryWatcher
from bisync_watch.engine import EngineRunner, Precondition
from bisync_watch.locks import LOCK_POLL_SEC, LockPoller, pid_alive, read_lock, read_last_error_from_log, remove_stale_lock
from bisync_watch.logsetup import log_action
from bisync_watch.models import (
    FileChange,
    FileChanged,
    ProfileStatus,
    StatusKind,
    SyncCompleted,
    SyncProgress,
    aggregate_status,
)
from bisync_watch.notify import BATCH_WINDOW_SEC, NotificationBatcher, Notifier
from bisync_watch.parser import parse_line
from bisync_watch.state import ProfileStateMachine
from bisync_watch.tailer import LogTailer

logger = logging.getLogger(__name__)

RECENT_CHANGES_LIMIT = 20
MOUNT_POLL_SEC = 5.0
ENGINE_WORKERS = 4


# -------------------------
# Messages
# -------------------------

@dataclass(frozen=True)
class LinesReceived:
    profile_id: str
    generation: int
    lines: list[str]


@dataclass(frozen=True)
class ContextReceived:
    profile_id: str
    generation: int
    lines: list[str]


@dataclass(frozen=True)
class DirectoryDirty:
    profile_id: str
    generation: int
    paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class RetryDirty:
    profile_id: str
    generation: int


@dataclass(frozen=True)
class ExternalRunFinished:
    profile_id: str
    generation: int


@dataclass(frozen=True)
class EngineFinished:
    profile_id: str
    exit_code: Optional[int]
    manual: bool = False


@dataclass(frozen=True)
class VolumeMounted:
    path: str


@dataclass(frozen=True)
class VolumeUnmounted:
    path: str


@dataclass(frozen=True)
class ManualSyncRequested:
    profile_ids: tuple[str, ...]


@dataclass(frozen=True)
class _Call:
    fn: Callable[[], None]


@dataclass(frozen=True)
class _Barrier:
    event: threading.Event


_STOP = object()


# -------------------------
# Watcher handles
# -------------------------

@dataclass
class WatcherHandle:
    """The running tailer / directory watcher (and optional lock poller) of one profile."""

    profile_id: str
    generation: int
    tailer: LogTailer
    dir_watcher: DirectoryWatcher
    lock_poller: Optional[LockPoller] = None

    def close(self) -> None:
        if self.lock_poller is not None:
            self.lock_poller.stop()
            self.lock_poller = None
        self.dir_watcher.stop()
        self.tailer.stop()


@dataclass(frozen=True)
class ProfileView:
    profile: Profile
    status: ProfileStatus
    last_error: Optional[str] = None
    progress: Optional[SyncProgress] = None
    last_sync: Optional[dt.datetime] = None


@dataclass(frozen=True)
class _Snapshot:
    aggregate: ProfileStatus = field(default_factory=ProfileStatus.not_configured)
    views: dict = field(default_factory=dict)
    recent: tuple[FileChange, ...] = ()


# -------------------------
# Mount monitor
# -------------------------

class MountMonitor(threading.Thread):
    """Polls drive guard paths and reports when one appears or disappears."""

    def __init__(
        self,
        paths: Callable[[], Iterable[str]],
        on_mounted: Callable[[str], None],
        on_unmounted: Callable[[str], None],
        interval_sec: float = MOUNT_POLL_SEC,
    ):
        super().__init__(daemon=True, name="mount-monitor")
        self.paths = paths
        self.on_mounted = on_mounted
        self.on_unmounted = on_unmounted
        self.interval_sec = max(0.01, float(interval_sec))
        self.stop_event = threading.Event()
        self._known: dict[str, bool] = {}

    def poll_once(self) -> None:
        for path in self.paths():
            present = os.path.exists(path)
            before = self._known.get(path)
            self._known[path] = present
            if before is None or before == present:
                continue
            if present:
                self.on_mounted(path)
            else:
                self.on_unmounted(path)

    def run(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("mount monitor poll failed")
            self.stop_event.wait(self.interval_sec)

    def stop(self) -> None:
        self.stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=5)


def _under(path: str, volume: str) -> bool:
    path = os.path.abspath(os.path.expanduser(path))
    volume = os.path.abspath(os.path.expanduser(volume)).rstrip(os.sep) or os.sep
    return path == volume or path.startswith(volume.rstrip(os.sep) + os.sep)


# -------------------------
# Supervisor
# -------------------------

class Supervisor:
    def __init__(
        self,
        profiles: Optional[Iterable[Profile]] = None,
        *,
        store: Optional[ProfileStore] = None,
        notifier: Optional[Notifier] = None,
        engine: Optional[EngineRunner] = None,
        debounce_sec: float = DEFAULT_DEBOUNCE_SEC,
        retry_delay_sec: Optional[float] = None,
        lock_poll_sec: float = LOCK_POLL_SEC,
        mount_poll_sec: float = MOUNT_POLL_SEC,
        batch_window_sec: float = BATCH_WINDOW_SEC,
        auto_sync: bool = True,
        use_polling: bool = False,
    ):
        if profiles is None:
            profiles = store.profiles if store is not None else []
        self._profiles: dict[str, Profile] = {p.id: p for p in profiles}
        self.store = store
        self.engine = engine
        self.debounce_sec = debounce_sec
        self.retry_delay_sec = debounce_sec if retry_delay_sec is None else retry_delay_sec
        self.lock_poll_sec = lock_poll_sec
        self.mount_poll_sec = mount_poll_sec
        self.auto_sync = auto_sync
        self.use_polling = use_polling

        self.batcher = NotificationBatcher(notifier, window_sec=batch_window_sec, dispatch=self._dispatch_call)

        # owned by the dispatcher thread
        self._machines: dict[str, ProfileStateMachine] = {}
        self._handles: dict[str, WatcherHandle] = {}
        self._recent: deque[FileChange] = deque(maxlen=RECENT_CHANGES_LIMIT)
        self._dirty_pending: set[str] = set()
        self._retry_timers: dict[str, threading.Timer] = {}
        self._engine_running: set[str] = set()
        # local paths the engine reported writing during the current or last sync
        self._engine_writes: dict[str, set[str]] = {}
        self._engine_writes_until: dict[str, float] = {}
        self._manual_outstanding: set[str] = set()
        self._generations = itertools.count(1)
        self._last_aggregate: Optional[ProfileStatus] = None

        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._mount_monitor: Optional[MountMonitor] = None

        self._snapshot = _Snapshot()
        self._view_lock = threading.Lock()
        self._manual_lock = threading.Lock()
        self._manual_running = False
        self._running = False

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        store: ProfileStore,
        profiles: Optional[Iterable[Profile]] = None,
        notifier: Optional[Notifier] = None,
    ) -> "Supervisor":
        return cls(
            profiles,
            store=store,
            notifier=notifier,
            engine=EngineRunner(cfg.engine_command),
            debounce_sec=cfg.debounce_sec,
            lock_poll_sec=cfg.lock_poll_sec,
            mount_poll_sec=cfg.mount_poll_sec,
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, timeout: float = 10.0) -> None:
        """Recover stale locks, start watchers for enabled profiles and begin dispatching."""
        if self._running:
            return
        self._running = True
        self._executor = ThreadPoolExecutor(max_workers=ENGINE_WORKERS, thread_name_prefix="bisync-engine")
        self._thread = threading.Thread(target=self._run, name="bisync-supervisor", daemon=True)
        self._thread.start()
        self._post(_Call(self._startup))
        self.flush(timeout)

        self._mount_monitor = MountMonitor(
            self._guard_paths,
            self.volume_mounted,
            self.volume_unmounted,
            interval_sec=self.mount_poll_sec,
        )
        self._mount_monitor.start()

    def stop(self, timeout: float = 10.0) -> None:
        if not self._running:
            return
        self._running = False
        if self._mount_monitor is not None:
            self._mount_monitor.stop()
            self._mount_monitor = None
        if self.engine is not None:
            self.engine.shutdown()
        self._queue.put(_STOP)
        if self._thread is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        logger.info("Supervisor stopped.")

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every message posted before this call has been handled."""
        if self._thread is None or threading.current_thread() is self._thread:
            return True
        done = threading.Event()
        self._queue.put(_Barrier(done))
        return done.wait(timeout)

    def _post(self, msg) -> None:
        if self._running:
            self._queue.put(msg)

    def _dispatch_call(self, fn: Callable[[], None]) -> None:
        self._post(_Call(fn))

    # -------------------------
    # Read API (any thread)
    # -------------------------

    def aggregate_status(self) -> ProfileStatus:
        with self._view_lock:
            return self._snapshot.aggregate

    def status_for(self, profile_id: str) -> ProfileStatus:
        view = self._view(profile_id)
        return view.status if view else ProfileStatus.not_configured()

    def last_error_for(self, profile_id: str) -> Optional[str]:
        view = self._view(profile_id)
        return view.last_error if view else None

    def progress_for(self, profile_id: str) -> Optional[SyncProgress]:
        view = self._view(profile_id)
        return view.progress if view else None

    def last_sync_for(self, profile_id: str) -> Optional[dt.datetime]:
        view = self._view(profile_id)
        return view.last_sync if view else None

    def recent_changes(self) -> list[FileChange]:
        """Newest first, at most RECENT_CHANGES_LIMIT entries across all profiles."""
        with self._view_lock:
            return list(self._snapshot.recent)

    def profiles(self) -> list[Profile]:
        with self._view_lock:
            return [v.profile for v in self._snapshot.views.values()]

    def is_muted(self, profile_id: str) -> bool:
        return self.batcher.is_muted(profile_id)

    @property
    def manual_sync_running(self) -> bool:
        with self._manual_lock:
            return self._manual_running

    def _view(self, profile_id: str) -> Optional[ProfileView]:
        with self._view_lock:
            return self._snapshot.views.get(profile_id)

    def _guard_paths(self) -> list[str]:
        with self._view_lock:
            views = list(self._snapshot.views.values())
        return [os.path.expanduser(v.profile.drive_path) for v in views if v.profile.enabled and v.profile.drive_path]

    # -------------------------
    # Write API (any thread)
    # -------------------------

    def set_profile_enabled(self, profile_id: str, enabled: bool) -> None:
        self._post(_Call(partial(self._set_enabled, profile_id, enabled)))

    def add_profile(self, profile: Profile) -> None:
        validate_profile(profile)
        self._post(_Call(partial(self._add, profile)))

    def update_profile(self, profile: Profile) -> None:
        validate_profile(profile)
        self._post(_Call(partial(self._update, profile)))

    def remove_profile(self, profile_id: str) -> None:
        self._post(_Call(partial(self._remove, profile_id)))

    def clear_error(self, profile_id: str) -> None:
        self._post(_Call(partial(self._clear_error, profile_id)))

    def set_muted(self, profile_id: str, muted: bool) -> None:
        self.batcher.set_muted(profile_id, muted)

    def volume_mounted(self, path: str) -> None:
        self._post(VolumeMounted(path))

    def volume_unmounted(self, path: str) -> None:
        self._post(VolumeUnmounted(path))

    def trigger_manual_sync(self, profile_id: Optional[str] = None) -> bool:
        """
        Run the engine once for every enabled profile (or just ``profile_id``).

        Returns False when a manual sync is already running or there is nothing to
        run. Automatic directory-triggered runs are not blocked by this.
        """
        if not self._running or self.engine is None:
            return False
        with self._manual_lock:
            if self._manual_running:
                logger.info("Manual sync already running; ignoring request")
                return False
            with self._view_lock:
                views = self._snapshot.views
                if profile_id is not None:
                    targets = [profile_id] if profile_id in views else []
                else:
                    targets = [pid for pid, v in views.items() if v.profile.enabled]
            if not targets:
                logger.info("Manual sync requested but no profiles to run")
                return False
            self._manual_running = True
        self._post(ManualSyncRequested(tuple(targets)))
        return True

    # -------------------------
    # Dispatcher
    # -------------------------

    def _run(self) -> None:
        while True:
            msg = self._queue.get()
            if msg is _STOP:
                self._shutdown()
                return
            if isinstance(msg, _Barrier):
                self._publish()
                msg.event.set()
                continue
            try:
                self._handle(msg)
            except Exception:
                logger.exception("supervisor failed handling %s", type(msg).__name__)
            self._publish()

    def _handle(self, msg) -> None:
        if isinstance(msg, LinesReceived):
            self._on_lines(msg)
        elif isinstance(msg, ContextReceived):
            self._on_context(msg)
        elif isinstance(msg, DirectoryDirty):
            if self._current(msg.profile_id, msg.generation):
                self._on_dirty(msg.profile_id, paths=msg.paths)
        elif isinstance(msg, RetryDirty):
            if self._current(msg.profile_id, msg.generation):
                self._on_dirty(msg.profile_id, retry=True)
        elif isinstance(msg, ExternalRunFinished):
            self._on_external_finished(msg)
        elif isinstance(msg, EngineFinished):
            self._on_engine_finished(msg)
        elif isinstance(msg, VolumeMounted):
            self._on_volume(msg.path, mounted=True)
        elif isinstance(msg, VolumeUnmounted):
            self._on_volume(msg.path, mounted=False)
        elif isinstance(msg, ManualSyncRequested):
            self._on_manual_sync(msg)
        elif isinstance(msg, _Call):
            msg.fn()
        else:
            logger.warning("Unknown supervisor message: %r", msg)

    def _current(self, profile_id: str, generation: int) -> bool:
        handle = self._handles.get(profile_id)
        return handle is not None and handle.generation == generation

    def _publish(self) -> None:
        views = {}
        for pid, profile in self._profiles.items():
            machine = self._machines.get(pid)
            if machine is None:
                views[pid] = ProfileView(profile, ProfileStatus.idle())
            else:
                views[pid] = ProfileView(
                    profile,
                    machine.status,
                    last_error=machine.last_error,
                    progress=machine.progress,
                    last_sync=machine.last_sync,
                )

        if not self._profiles:
            aggregate = ProfileStatus.not_configured()
        elif not any(p.enabled for p in self._profiles.values()):
            aggregate = ProfileStatus.idle()
        else:
            aggregate = aggregate_status(m.status for m in self._machines.values())

        with self._view_lock:
            self._snapshot = _Snapshot(aggregate=aggregate, views=views, recent=tuple(self._recent))

        if aggregate != self._last_aggregate:
            self._last_aggregate = aggregate
            level = logging.WARNING if aggregate.is_error else logging.INFO
            log_action(logger, "STATUS", aggregate.text, level=level)

    def _shutdown(self) -> None:
        for pid in list(self._handles):
            self._stop_watching(pid)
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        self.batcher.close()

    # -------------------------
    # Startup recovery
    # -------------------------

    def _startup(self) -> None:
        for profile in self._profiles.values():
            record = read_lock(profile.lock_path)
            if record is None:
                continue
            if record.pid is None:
                log_action(logger, "LOCK", f"[{profile.name}] lock has no readable PID; leaving it", path=record.path, is_dir=False, level=logging.WARNING)
            elif not pid_alive(record.pid):
                remove_stale_lock(record.path)

        for profile in self._profiles.values():
            if profile.enabled:
                self._start_watching(profile)

    def _initial_status(self, profile: Profile) -> ProfileStatus:
        if profile.drive_path and not os.path.exists(os.path.expanduser(profile.drive_path)):
            return ProfileStatus.drive_not_mounted()
        return ProfileStatus.idle()

    # -------------------------
    # Watching
    # -------------------------

    def _make_dir_watcher(self, profile: Profile, generation: int) -> DirectoryWatcher:
        pid = profile.id
        return DirectoryWatcher(
            [profile.local_root],
            lambda paths: self._post(DirectoryDirty(pid, generation, tuple(paths))),
            debounce_sec=self.debounce_sec,
            label=profile.name,
            use_polling=self.use_polling,
        )

    def _start_watching(self, profile: Profile) -> None:
        pid = profile.id
        if pid in self._handles:
            self._stop_watching(pid)
        generation = next(self._generations)

        machine = ProfileStateMachine(pid, self.batcher, name=profile.name, initial=self._initial_status(profile))
        self._machines[pid] = machine
        self.batcher.set_profile_info(pid, profile.name, str(profile.local_root))

        tailer = LogTailer(
            profile.log_path,
            lambda lines: self._post(LinesReceived(pid, generation, lines)),
            on_context=lambda lines: self._post(ContextReceived(pid, generation, lines)),
            use_polling=self.use_polling,
        )
        handle = WatcherHandle(pid, generation, tailer, self._make_dir_watcher(profile, generation))
        self._handles[pid] = handle

        record = read_lock(profile.lock_path)
        if record is not None and record.pid is not None and pid_alive(record.pid):
            log_action(logger, "LOCK", f"[{profile.name}] sync already running (pid {record.pid})", path=record.path, is_dir=False)
            machine.external_run_detected()
            handle.lock_poller = LockPoller(
                profile.lock_path,
                lambda: self._post(ExternalRunFinished(pid, generation)),
                interval_sec=self.lock_poll_sec,
                label=profile.short_id,
            )
            handle.lock_poller.start()

        tailer.start()
        handle.dir_watcher.start()
        log_action(logger, "WATCH", f"[{profile.name}] watching", path=profile.local_root, is_dir=True)

    def _stop_watching(self, profile_id: str) -> None:
        handle = self._handles.pop(profile_id, None)
        if handle is not None:
            handle.close()
        timer = self._retry_timers.pop(profile_id, None)
        if timer is not None:
            timer.cancel()
        self._dirty_pending.discard(profile_id)
        self._engine_writes.pop(profile_id, None)
        self._engine_writes_until.pop(profile_id, None)
        self._machines.pop(profile_id, None)
        self.batcher.forget(profile_id)

    # -------------------------
    # Log lines
    # -------------------------

    def _on_lines(self, msg: LinesReceived) -> None:
        if not self._current(msg.profile_id, msg.generation):
            return
        machine = self._machines[msg.profile_id]
        for line in msg.lines:
            event = parse_line(line)
            if event is None:
                continue
            was_syncing = machine.status.kind is StatusKind.SYNCING
            machine.handle(event)
            if not was_syncing and machine.status.kind is StatusKind.SYNCING:
                self._engine_writes[msg.profile_id] = set()
                self._engine_writes_until.pop(msg.profile_id, None)
            if isinstance(event.kind, FileChanged):
                self._recent.appendleft(event.kind.change)
                self._note_engine_write(msg.profile_id, event.kind.change)
            if was_syncing and machine.status.kind is not StatusKind.SYNCING:
                self._sync_ended(msg.profile_id)

    def _on_context(self, msg: ContextReceived) -> None:
        """Earlier log lines seen at startup: history only, no status or notices."""
        if not self._current(msg.profile_id, msg.generation):
            return
        machine = self._machines[msg.profile_id]
        for line in msg.lines:
            event = parse_line(line)
            if event is None:
                continue
            if isinstance(event.kind, SyncCompleted):
                machine.last_sync = event.timestamp
            elif isinstance(event.kind, FileChanged):
                self._recent.appendleft(event.kind.change)

    def _on_external_finished(self, msg: ExternalRunFinished) -> None:
        if not self._current(msg.profile_id, msg.generation):
            return
        handle = self._handles[msg.profile_id]
        handle.lock_poller = None
        profile = self._profiles[msg.profile_id]
        error = read_last_error_from_log(profile.log_path)
        if self._machines[msg.profile_id].external_run_finished(error):
            self._sync_ended(msg.profile_id)

    # -------------------------
    # Engine runs
    # -------------------------

    def _launch(self, profile: Profile, *, manual: bool = False) -> bool:
        pid = profile.id
        if self.engine is None or self._executor is None:
            return False
        if pid in self._engine_running:
            logger.debug("[%s] engine already running; not starting another", profile.name)
            return False

        machine = self._machines.get(pid)
        pre = self.engine.check(profile)
        if pre is Precondition.DRIVE_NOT_MOUNTED:
            if machine is not None:
                machine.drive_unmounted()
            return False
        if pre is not Precondition.OK:
            if machine is not None:
                machine.fail(pre.value)
            else:
                log_action(logger, "SYNC_FAIL", f"[{profile.name}] {pre.value}", level=logging.WARNING)
            return False

        self._engine_running.add(pid)
        future = self._executor.submit(self.engine.run, profile)
        future.add_done_callback(partial(self._engine_done, pid, manual))
        return True

    def _engine_done(self, profile_id: str, manual: bool, future: Future) -> None:
        code = None
        if not future.cancelled():
            exc = future.exception()
            if exc is not None:
                logger.error("engine run for %s raised: %s", profile_id, exc)
            else:
                code = future.result()
        self._post(EngineFinished(profile_id, code, manual))

    def _on_engine_finished(self, msg: EngineFinished) -> None:
        self._engine_running.discard(msg.profile_id)
        self._expire_engine_writes(msg.profile_id)
        if msg.manual:
            self._manual_outstanding.discard(msg.profile_id)
            if not self._manual_outstanding:
                self._finish_manual()
        if msg.profile_id in self._dirty_pending:
            self._arm_retry(msg.profile_id)

    def _on_manual_sync(self, msg: ManualSyncRequested) -> None:
        launched = []
        for pid in msg.profile_ids:
            profile = self._profiles.get(pid)
            if profile is not None and self._launch(profile, manual=True):
                launched.append(pid)
        self._manual_outstanding = set(launched)
        if launched:
            log_action(logger, "ENGINE", f"manual sync started for {len(launched)} profile(s)")
        else:
            self._finish_manual()

    def _finish_manual(self) -> None:
        with self._manual_lock:
            self._manual_running = False
        logger.info("Manual sync finished")

    # -------------------------
    # Directory changes
    # -------------------------

    def _on_dirty(self, profile_id: str, retry: bool = False, paths: tuple[str, ...] = ()) -> None:
        if retry:
            self._retry_timers.pop(profile_id, None)
        if not self.auto_sync:
            return
        machine = self._machines.get(profile_id)
        profile = self._profiles.get(profile_id)
        if machine is None or profile is None:
            return

        if paths and self._written_by_engine(profile, paths):
            logger.debug("[%s] only the engine's own writes changed; not syncing", profile.name)
            return
        if machine.status.kind is StatusKind.SYNCING or profile_id in self._engine_running:
            logger.debug("[%s] change seen during sync; will retry afterwards", profile.name)
            self._dirty_pending.add(profile_id)
            return
        if machine.status.kind is not StatusKind.IDLE:
            logger.debug("[%s] change ignored while %s", profile.name, machine.status.kind.value)
            self._dirty_pending.discard(profile_id)
            return

        self._dirty_pending.discard(profile_id)
        log_action(logger, "CHANGE", f"[{profile.name}] local changes detected, syncing", path=profile.local_root, is_dir=True)
        self._launch(profile)

    def _sync_ended(self, profile_id: str) -> None:
        self._expire_engine_writes(profile_id)
        if profile_id in self._dirty_pending and profile_id not in self._engine_running:
            self._arm_retry(profile_id)

    def _note_engine_write(self, profile_id: str, change: FileChange) -> None:
        profile = self._profiles.get(profile_id)
        written = self._engine_writes.get(profile_id)
        if profile is None or written is None:
            return
        root = os.path.abspath(profile.local_root)
        path = os.path.normpath(os.path.join(root, *change.path.strip("/").split("/")))
        # every directory up to the root is touched by the same write
        while path != root and path.startswith(root + os.sep):
            written.add(path)
            path = os.path.dirname(path)
        written.add(root)

    def _expire_engine_writes(self, profile_id: str) -> None:
        # trailing watcher events land within one debounce after the last write
        self._engine_writes_until[profile_id] = time.monotonic() + 2 * self.debounce_sec + 1.0

    def _written_by_engine(self, profile: Profile, paths: Iterable[str]) -> bool:
        """True when every changed path is one the engine reported writing."""
        written = self._engine_writes.get(profile.id)
        if not written:
            return False
        machine = self._machines.get(profile.id)
        active = profile.id in self._engine_running or (machine is not None and machine.status.kind is StatusKind.SYNCING)
        until = self._engine_writes_until.get(profile.id)
        if not active and (until is None or time.monotonic() > until):
            self._engine_writes.pop(profile.id, None)
            self._engine_writes_until.pop(profile.id, None)
            return False
        return all(os.path.abspath(p) in written for p in paths)

    def _arm_retry(self, profile_id: str) -> None:
        handle = self._handles.get(profile_id)
        if handle is None:
            return
        old = self._retry_timers.pop(profile_id, None)
        if old is not None:
            old.cancel()
        timer = threading.Timer(self.retry_delay_sec, self._post, args=(RetryDirty(profile_id, handle.generation),))
        timer.daemon = True
        self._retry_timers[profile_id] = timer
        timer.start()

    # -------------------------
    # Volumes
    # -------------------------

    def _on_volume(self, path: str, mounted: bool) -> None:
        for pid, handle in list(self._handles.items()):
            profile = self._profiles[pid]
            if not profile.drive_path or not _under(profile.drive_path, path):
                continue
            machine = self._machines[pid]
            if mounted:
                machine.drive_mounted()
                # the sync root may not have existed when the watcher started
                handle.dir_watcher.stop()
                handle.dir_watcher = self._make_dir_watcher(profile, handle.generation)
                handle.dir_watcher.start()
            else:
                machine.drive_unmounted()

    # -------------------------
    # Profile edits
    # -------------------------

    def _save(self, action: str, profile: Optional[Profile] = None, profile_id: str = "") -> None:
        if self.store is None:
            return
        if action == "add":
            self.store.add(profile)
        elif action == "update":
            self.store.update(profile)
        elif action == "delete":
            self.store.delete(profile_id)

    def _set_enabled(self, profile_id: str, enabled: bool) -> None:
        profile = self._profiles.get(profile_id)
        if profile is None:
            logger.warning("Unknown profile: %s", profile_id)
            return
        self._update(replace(profile, enabled=enabled))

    def _add(self, profile: Profile) -> None:
        if profile.id in self._profiles:
            logger.warning("Profile %s already exists", profile.id)
            return
        self._profiles[profile.id] = profile
        self._save("add", profile)
        logger.info("Added profile %s", profile.name)
        if profile.enabled:
            self._start_watching(profile)
            self._install(profile)

    def _update(self, profile: Profile) -> None:
        if profile.id not in self._profiles:
            logger.warning("Unknown profile: %s", profile.id)
            return
        self._profiles[profile.id] = profile
        self._save("update", profile)
        self._stop_watching(profile.id)
        if profile.enabled:
            self._start_watching(profile)
            self._install(profile)
        logger.info("Profile %s %s", profile.name, "enabled" if profile.enabled else "disabled")

    def _install(self, profile: Profile) -> None:
        """Write the engine config for an enabled profile; a failure puts it in Error."""
        try:
            write_engine_config(profile)
        except OSError as e:
            message = f"Could not write engine config: {e}"
            machine = self._machines.get(profile.id)
            if machine is not None:
                machine.fail(message)
            else:
                logger.error("[%s] %s", profile.name, message)

    def _remove(self, profile_id: str) -> None:
        profile = self._profiles.pop(profile_id, None)
        if profile is None:
            return
        self._stop_watching(profile_id)
        self._save("delete", profile_id=profile_id)
        logger.info("Removed profile %s", profile.name)

    def _clear_error(self, profile_id: str) -> None:
        machine = self._machines.get(profile_id)
        if machine is not None and machine.clear_error():
            logger.info("Cleared error for %s", machine.name)
