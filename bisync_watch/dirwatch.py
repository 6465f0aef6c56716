"""
Directory change watcher.

Watches one or more sync roots recursively and calls ``on_change(paths)`` once after
``debounce_sec`` of quiet following the last relevant change, passing every relevant
path collected since the previous call. Every raw path goes through three
filters before it may (re)arm the debounce timer:

1. scope   - must be a watched root or live under one
2. phantom - a missing path whose file name exists in a sibling directory of its
             parent is a misreported event on some removable/network volumes, not a
             delete; a missing path with no such sibling is a real delete
3. noise   - OS metadata, temp/backup names and the engine's access-check file
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from pathspec import PathSpec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from bisync_watch.logsetup import log_action

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SEC = 5.0

# access-check marker the engine keeps in both sync roots
CHECK_FILE_NAME = ".bisync-watch-check"

NOISE_PATTERNS = [
    # macOS metadata
    "._*",
    ".DS_Store",
    ".fseventsd",
    ".Spotlight-V100",
    ".Trashes",
    # Windows thumbs/previews
    "Thumbs.db",
    "ehthumbs.db",
    "desktop.ini",
    # Temporary / backup files
    "*.tmp",
    "*.temp",
    "~$*",
    "*.swp",
    "*~",
    # Our own files
    CHECK_FILE_NAME,
    ".bisync-watch*",
]


class NoiseFilter:
    def __init__(self, patterns: Iterable[str] = NOISE_PATTERNS):
        self.spec = PathSpec.from_lines("gitwildmatch", list(patterns))

    def is_noise(self, path: str, root: Optional[str] = None) -> bool:
        if root:
            try:
                rel = Path(path).relative_to(root).as_posix()
            except ValueError:
                rel = Path(path).name
        else:
            rel = Path(path).name
        if not rel or rel == ".":
            return False
        return self.spec.match_file(rel)


def find_phantom_original(path: str) -> Optional[str]:
    """
    For a path that no longer exists, look for the same file name under the other
    directories next to its parent. Returns the path found there, if any.
    """
    name = os.path.basename(path)
    parent = os.path.dirname(path)
    grandparent = os.path.dirname(parent)
    if not name or not grandparent or grandparent == parent:
        return None
    try:
        entries = list(os.scandir(grandparent))
    except OSError:
        return None
    for entry in entries:
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        if os.path.abspath(entry.path) == os.path.abspath(parent):
            continue
        candidate = os.path.join(entry.path, name)
        if os.path.exists(candidate):
            return candidate
    return None


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: DirectoryWatcher):
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed_no_write"):
            return
        paths = [os.fsdecode(event.src_path)]
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.append(os.fsdecode(dest))
        self.watcher.handle_paths(paths)


class DirectoryWatcher:
    def __init__(
        self,
        roots: Iterable[str | Path],
        on_change: Callable[[list[str]], None],
        *,
        debounce_sec: float = DEFAULT_DEBOUNCE_SEC,
        label: str = "",
        noise: Optional[NoiseFilter] = None,
        use_polling: bool = False,
    ):
        self.roots = [os.path.abspath(os.path.expanduser(str(r))).rstrip(os.sep) or os.sep for r in roots]
        self.on_change = on_change
        self.debounce_sec = max(0.0, float(debounce_sec))
        self.label = label or "unknown"
        self.noise = noise or NoiseFilter()
        self.use_polling = use_polling

        self._observer = None
        self._timer: Optional[threading.Timer] = None
        self._batch: set[str] = set()
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True

        existing = [r for r in self.roots if os.path.isdir(r)]
        if not existing:
            logger.debug("[%s] no existing roots to watch: %s", self.label, ", ".join(self.roots))
            return

        observer = PollingObserver(timeout=0.5) if self.use_polling else Observer()
        handler = _ChangeHandler(self)
        for root in existing:
            observer.schedule(handler, root, recursive=True)
        observer.daemon = True
        observer.start()
        with self._lock:
            self._observer = observer
        log_action(logger, "WATCH", f"[{self.label}] watching {len(existing)} root(s)", path=existing[0], is_dir=True, level=logging.DEBUG)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._batch.clear()
            observer = self._observer
            self._observer = None

        if observer is not None:
            observer.stop()
            if observer.is_alive() and threading.current_thread() is not observer:
                observer.join(timeout=5)

    # -------------------------
    # Filtering
    # -------------------------

    def _root_for(self, path: str) -> Optional[str]:
        for root in self.roots:
            if path == root or path.startswith(root + os.sep):
                return root
        return None

    def relevant_paths(self, paths: Iterable[str]) -> list[str]:
        relevant = []
        for raw in paths:
            path = os.path.abspath(raw)
            root = self._root_for(path)
            if root is None:
                logger.debug("[%s]   FILTERED OUT: %s (not in watched paths)", self.label, path)
                continue

            if not os.path.exists(path):
                original = find_phantom_original(path)
                if original is not None:
                    logger.debug("[%s]   PHANTOM: %s (exists at %s)", self.label, path, original)
                    continue
                logger.debug("[%s]   DELETE EVENT: %s", self.label, path)

            if self.noise.is_noise(path, root):
                logger.debug("[%s]   NOISE: %s", self.label, path)
                continue

            relevant.append(path)
        return relevant

    def handle_paths(self, paths: Iterable[str]) -> bool:
        """Filter raw event paths and (re)arm the debounce timer if any survive."""
        paths = list(paths)
        logger.debug("[%s] received %d raw path(s)", self.label, len(paths))
        relevant = self.relevant_paths(paths)
        if not relevant:
            return False
        logger.debug("[%s] %d relevant -> restarting debounce timer", self.label, len(relevant))
        self._arm(relevant)
        return True

    # -------------------------
    # Debounce
    # -------------------------

    def _arm(self, paths: Iterable[str] = ()) -> None:
        with self._lock:
            if not self._running:
                return
            self._batch.update(paths)
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_sec, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._timer is None or threading.current_thread() is not self._timer:
                return
            self._timer = None
            batch = sorted(self._batch)
            self._batch.clear()
            if not self._running:
                return
        try:
            self.on_change(batch)
        except Exception:
            logger.exception("[%s] change callback failed", self.label)
