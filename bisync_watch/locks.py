"""
Engine lock files and log-tail outcome resolution.

A lock file holds the decimal PID of the engine run that owns it:
- absent                -> not running
- present, PID alive    -> running
- present, PID gone     -> stale (the run crashed); safe to delete
A lock is only ever deleted after re-reading it and confirming its PID is dead.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import psutil

from bisync_watch import patterns
from bisync_watch.logsetup import log_action
from bisync_watch.models import SyncCompleted, SyncFailed, SyncStarted
from bisync_watch.parser import parse_line

logger = logging.getLogger(__name__)

LOCK_POLL_SEC = 3.0
LOG_TAIL_BYTES = 256 * 1024
MAX_LOG_ERROR_LENGTH = 300


class LockState(str, Enum):
    ABSENT = "absent"
    RUNNING = "running"
    STALE = "stale"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class LockRecord:
    path: Path
    pid: Optional[int]

    @property
    def state(self) -> LockState:
        if self.pid is None:
            return LockState.UNREADABLE
        return LockState.RUNNING if pid_alive(self.pid) else LockState.STALE


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists, owned by someone else
        return True


def read_lock(path: str | Path) -> Optional[LockRecord]:
    """Return the lock record, or None when no lock file exists."""
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8", errors="replace").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("could not read lock %s: %s", p, e)
        return LockRecord(p, None)
    first = text.splitlines()[0].strip() if text else ""
    try:
        pid = int(first)
    except ValueError:
        pid = None
    return LockRecord(p, pid)


def lock_state(path: str | Path) -> LockState:
    record = read_lock(path)
    if record is None:
        return LockState.ABSENT
    return record.state


def remove_stale_lock(path: str | Path) -> bool:
    """Delete the lock only if it names a PID that is confirmed dead."""
    record = read_lock(path)
    if record is None or record.pid is None:
        return False
    if pid_alive(record.pid):
        return False
    try:
        record.path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        log_action(logger, "LOCK", f"failed to remove stale lock (pid {record.pid}) | {e}", path=record.path, is_dir=False, level=logging.WARNING)
        return False
    log_action(logger, "LOCK", f"removed stale lock (pid {record.pid} not running)", path=record.path, is_dir=False)
    return True


# -------------------------
# Log tail inspection
# -------------------------

def _tail_lines(log_path: Path, max_bytes: int) -> list[str]:
    try:
        with log_path.open("rb") as f:
            f.seek(0, 2)
            size = f.tell()
            start = max(0, size - max_bytes)
            f.seek(start)
            data = f.read()
    except OSError:
        return []
    lines = data.decode("utf-8", errors="replace").split("\n")
    if start > 0 and lines:
        lines = lines[1:]
    return [ln.strip() for ln in lines if ln.strip()]


def _message_from_line(line: str) -> Optional[str]:
    clean = patterns.strip_ansi(line)
    if "CRITICAL:" in clean:
        return clean.split("CRITICAL:", 1)[1].strip()
    if clean.startswith("{") and clean.endswith("}"):
        try:
            record = json.loads(clean)
        except ValueError:
            return None
        if not isinstance(record, dict):
            return None
        if str(record.get("level", "")).lower() in ("error", "notice"):
            msg = record.get("msg")
            if isinstance(msg, str):
                return patterns.strip_ansi(msg)
    return None


@dataclass(frozen=True)
class RunOutcome:
    finished: bool
    failed: bool
    exit_code: Optional[int] = None
    error: Optional[str] = None


def inspect_log_tail(log_path: str | Path, max_bytes: int = LOG_TAIL_BYTES) -> RunOutcome:
    """
    Decide how the most recent run ended by reading the log newest-first.

    A completion marker seen before any failure marker means success. After a
    failure marker, older lines up to the run's start marker are searched for the
    most actionable error text.
    """
    lines = _tail_lines(Path(log_path).expanduser(), max_bytes)

    failure: Optional[SyncFailed] = None
    critical: list[str] = []
    general: list[str] = []

    for line in reversed(lines):
        event = parse_line(line)
        kind = event.kind if event is not None else None

        if failure is None:
            if isinstance(kind, SyncCompleted):
                return RunOutcome(finished=True, failed=False)
            if isinstance(kind, SyncFailed) and not patterns.is_transient_failure(kind.message):
                failure = kind
                continue
            if isinstance(kind, SyncStarted):
                # started, never finished
                return RunOutcome(finished=False, failed=False)
            continue

        if isinstance(kind, SyncStarted):
            break

        msg = _message_from_line(line)
        if not msg or (patterns.is_generic_failure(msg) and not patterns.is_actionable(msg)):
            continue
        msg = patterns.clean_error_message(msg, max_length=MAX_LOG_ERROR_LENGTH)
        if not msg:
            continue
        if patterns.is_actionable(msg):
            if msg not in critical:
                critical.append(msg)
        elif msg not in general:
            general.append(msg)
        if critical or len(general) >= 2:
            break

    if failure is None:
        return RunOutcome(finished=False, failed=False)

    best = critical[0] if critical else (general[0] if general else None)
    return RunOutcome(finished=True, failed=True, exit_code=failure.exit_code, error=best)


def read_last_error_from_log(log_path: str | Path) -> Optional[str]:
    outcome = inspect_log_tail(log_path)
    if not outcome.failed:
        return None
    return outcome.error or f"Exit code {outcome.exit_code}"


# -------------------------
# Waiting on a live run
# -------------------------

class LockPoller(threading.Thread):
    """
    Polls a lock file held by a live engine run until the PID exits or the lock
    disappears, then calls ``on_finished()`` once.
    """

    def __init__(
        self,
        lock_path: str | Path,
        on_finished: Callable[[], None],
        *,
        interval_sec: float = LOCK_POLL_SEC,
        label: str = "",
    ):
        super().__init__(daemon=True, name=f"lock-poller-{label}" if label else "lock-poller")
        self.lock_path = Path(lock_path).expanduser()
        self.on_finished = on_finished
        self.interval_sec = max(0.01, float(interval_sec))
        self.stop_event = threading.Event()

    def run(self) -> None:
        logger.debug("Polling %s every %.1fs", self.lock_path, self.interval_sec)
        while not self.stop_event.is_set():
            state = lock_state(self.lock_path)
            if state in (LockState.ABSENT, LockState.STALE):
                if state is LockState.STALE:
                    remove_stale_lock(self.lock_path)
                break
            self.stop_event.wait(self.interval_sec)

        if self.stop_event.is_set():
            return
        try:
            self.on_finished()
        except Exception:
            logger.exception("lock poller callback failed for %s", self.lock_path)

    def stop(self) -> None:
        self.stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=5)
