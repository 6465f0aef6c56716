"""
Log tailer.

Follows one log file and hands every newly appended, non-empty, stripped line to
``on_lines`` (a list per batch, in append order). The read cursor only moves past
bytes that were delivered, so nothing read is ever lost; a trailing fragment with
no newline is held back until the rest of the line arrives.

Rotation handling:
- file shrank below the cursor, or the bytes just before the cursor changed
  (truncated in place and rewritten) -> restart from offset 0
- path now points at a different inode (rotated/replaced) -> drain the old handle,
  then reopen the new file from offset 0
- path vanished -> close and retry opening after ``reopen_delay``
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from bisync_watch.logsetup import log_action

logger = logging.getLogger(__name__)

CONTEXT_BYTES = 64 * 1024
CONTEXT_LINES = 50
# bytes before the cursor compared on every check to spot an in-place rewrite
MARK_BYTES = 16
REOPEN_DELAY_SEC = 1.0
MAX_REOPEN_DELAY_SEC = 30.0

LinesCallback = Callable[[list[str]], None]


def _split_lines(data: bytes) -> list[str]:
    text = data.decode("utf-8", errors="replace")
    return [ln.strip() for ln in text.split("\n") if ln.strip()]


class _TailHandler(FileSystemEventHandler):
    def __init__(self, tailer: LogTailer):
        self.tailer = tailer

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = os.path.abspath(os.fsdecode(event.src_path))
        dest = getattr(event, "dest_path", None)
        dest = os.path.abspath(os.fsdecode(dest)) if dest else None
        if self.tailer.path_str in (src, dest):
            self.tailer.check()


class LogTailer:
    def __init__(
        self,
        path: str | Path,
        on_lines: LinesCallback,
        *,
        context_bytes: int = CONTEXT_BYTES,
        context_lines: int = CONTEXT_LINES,
        reopen_delay: float = REOPEN_DELAY_SEC,
        use_polling: bool = False,
        on_context: Optional[LinesCallback] = None,
    ):
        self.path = Path(path).expanduser()
        self.path_str = os.path.abspath(str(self.path))
        self.on_lines = on_lines
        # startup context goes here when given, else to on_lines
        self.on_context = on_context
        self.context_bytes = max(0, int(context_bytes))
        self.context_lines = max(0, int(context_lines))
        self.reopen_delay = max(0.05, float(reopen_delay))
        self.use_polling = use_polling

        self._fh: Optional[BinaryIO] = None
        self._cursor = 0
        self._pending = b""
        self._mark = b""
        self._lock = threading.RLock()
        self._observer = None
        self._reopen_timer: Optional[threading.Timer] = None
        self._retry_delay = self.reopen_delay
        self._running = False

    # -------------------------
    # Lifecycle
    # -------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True

            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if not self.path.exists():
                    self.path.touch()
            except OSError as e:
                log_action(logger, "WATCH", f"cannot create log file {self.path} | {e}", path=self.path, is_dir=False, level=logging.WARNING)

            if self._open(from_start=False):
                self._deliver_context()
            else:
                self._schedule_reopen()

            observer = PollingObserver(timeout=0.5) if self.use_polling else Observer()
            observer.schedule(_TailHandler(self), str(self.path.parent), recursive=False)
            observer.daemon = True
            observer.start()
            self._observer = observer

        logger.debug("Tailing %s (cursor=%d)", self.path, self._cursor)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._reopen_timer is not None:
                self._reopen_timer.cancel()
                self._reopen_timer = None
            observer = self._observer
            self._observer = None
            self._close()

        # join outside the lock; the observer thread may be waiting on it in check()
        if observer is not None:
            observer.stop()
            if observer.is_alive() and threading.current_thread() is not observer:
                observer.join(timeout=5)

    # -------------------------
    # Reading
    # -------------------------

    def check(self) -> None:
        """Read whatever was appended since the last call and deliver it."""
        with self._lock:
            if not self._running:
                return
            if self._fh is None:
                # recreated before the retry timer fired
                if self._reopen_timer is not None and os.path.exists(self.path_str):
                    self._reopen()
                return

            try:
                st = os.stat(self.path_str)
            except FileNotFoundError:
                self._drain()
                self._close()
                log_action(logger, "WATCH", f"log disappeared, retrying in {self.reopen_delay:.1f}s", path=self.path, is_dir=False)
                self._retry_delay = self.reopen_delay
                self._schedule_reopen()
                return
            except OSError as e:
                logger.warning("stat failed for %s: %s", self.path, e)
                return

            try:
                fst = os.fstat(self._fh.fileno())
            except OSError:
                fst = None

            if fst is None or (st.st_ino, st.st_dev) != (fst.st_ino, fst.st_dev):
                # rotated: finish the old file, then follow the new one from the top
                self._drain()
                self._close()
                log_action(logger, "WATCH", "log rotated, reopening", path=self.path, is_dir=False)
                if not self._open(from_start=True):
                    self._schedule_reopen()
                    return
                st = os.fstat(self._fh.fileno())

            if st.st_size < self._cursor:
                logger.debug("Log %s truncated (%d < %d), rewinding", self.path, st.st_size, self._cursor)
                self._rewind()
            elif not self._mark_matches():
                logger.debug("Log %s rewritten before offset %d, rewinding", self.path, self._cursor)
                self._rewind()

            if st.st_size > self._cursor:
                self._read_to_end()

    def _read_to_end(self) -> None:
        assert self._fh is not None
        try:
            self._fh.seek(self._cursor)
            data = self._fh.read()
        except OSError as e:
            logger.warning("read failed for %s: %s", self.path, e)
            return
        if not data:
            return
        self._cursor += len(data)
        self._mark = (self._mark + data)[-MARK_BYTES:]

        buf = self._pending + data
        cut = buf.rfind(b"\n")
        if cut < 0:
            self._pending = buf
            return
        self._pending = buf[cut + 1:]
        lines = _split_lines(buf[:cut])
        if lines:
            self._emit(lines)

    def _rewind(self) -> None:
        self._cursor = 0
        self._pending = b""
        self._mark = b""

    def _read_mark(self) -> bytes:
        assert self._fh is not None
        start = max(0, self._cursor - MARK_BYTES)
        try:
            self._fh.seek(start)
            return self._fh.read(self._cursor - start)
        except OSError as e:
            logger.warning("read failed for %s: %s", self.path, e)
            return b""

    def _mark_matches(self) -> bool:
        """Do the bytes just before the cursor still read what was delivered?"""
        if not self._mark:
            return True
        assert self._fh is not None
        start = self._cursor - len(self._mark)
        try:
            self._fh.seek(start)
            current = self._fh.read(len(self._mark))
        except OSError as e:
            logger.warning("read failed for %s: %s", self.path, e)
            return True
        return current == self._mark

    def _drain(self) -> None:
        """Deliver anything left in the current handle, including a final unterminated line."""
        if self._fh is None:
            return
        self._read_to_end()
        if self._pending:
            lines = _split_lines(self._pending)
            self._pending = b""
            if lines:
                self._emit(lines)

    def _deliver_context(self) -> None:
        if self._fh is None or self.context_bytes == 0 or self.context_lines == 0:
            return
        end = self._cursor
        start = max(0, end - self.context_bytes)
        try:
            self._fh.seek(start)
            data = self._fh.read(end - start)
        except OSError as e:
            logger.warning("could not read recent lines from %s: %s", self.path, e)
            return

        if start > 0:
            # first line is probably cut in half
            nl = data.find(b"\n")
            data = data[nl + 1:] if nl >= 0 else b""

        cut = data.rfind(b"\n")
        if cut < 0:
            self._pending = data
            return
        self._pending = data[cut + 1:]
        lines = _split_lines(data[:cut])[-self.context_lines:]
        if lines:
            self._emit(lines, self.on_context)

    def _emit(self, lines: list[str], consumer: Optional[LinesCallback] = None) -> None:
        try:
            (consumer or self.on_lines)(lines)
        except Exception:
            logger.exception("line consumer failed for %s", self.path)

    # -------------------------
    # Open / reopen
    # -------------------------

    def _open(self, from_start: bool) -> bool:
        try:
            fh = open(self.path_str, "rb")
        except OSError as e:
            log_action(logger, "WATCH", f"failed to open log | {e}", path=self.path, is_dir=False, level=logging.WARNING)
            return False
        self._fh = fh
        self._pending = b""
        if from_start:
            self._rewind()
        else:
            self._cursor = os.fstat(fh.fileno()).st_size
            self._mark = self._read_mark()
        self._retry_delay = self.reopen_delay
        return True

    def _close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None

    def _schedule_reopen(self) -> None:
        if not self._running:
            return
        if self._reopen_timer is not None:
            self._reopen_timer.cancel()
        timer = threading.Timer(self._retry_delay, self._reopen)
        timer.daemon = True
        self._reopen_timer = timer
        timer.start()

    def _reopen(self) -> None:
        with self._lock:
            self._reopen_timer = None
            if not self._running or self._fh is not None:
                return
            if self.path.exists() and self._open(from_start=True):
                log_action(logger, "WATCH", "log reopened", path=self.path, is_dir=False)
                self.check()
                return
            self._retry_delay = min(self._retry_delay * 2, MAX_REOPEN_DELAY_SEC)
            self._schedule_reopen()
