"""
Process invocation boundary for the external sync engine.

The engine is started as ``<engine_command...> <profile config path>``. Its stdout
and stderr are discarded; everything observable comes through its log file and
lock file. Only the exit code is reported back.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from enum import Enum
from typing import Optional, Sequence

from bisync_watch.config import Profile
from bisync_watch.logsetup import log_action

logger = logging.getLogger(__name__)

WAIT_POLL_SEC = 0.5


class Precondition(str, Enum):
    OK = "ok"
    DRIVE_NOT_MOUNTED = "drive_not_mounted"
    SCRIPT_NOT_FOUND = "Script not found"
    CONFIG_NOT_FOUND = "Config not found"


class EngineRunner:
    def __init__(self, command: Sequence[str], *, poll_sec: float = WAIT_POLL_SEC):
        if not command:
            raise ValueError("Engine command must not be empty.")
        self.command = [str(c) for c in command]
        self.poll_sec = max(0.05, float(poll_sec))
        self._stop = threading.Event()
        self._procs: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    @property
    def script(self) -> str:
        return self.command[-1]

    def script_exists(self) -> bool:
        script = os.path.expanduser(self.script)
        return os.path.isfile(script) or shutil.which(script) is not None

    def check(self, profile: Profile) -> Precondition:
        if profile.drive_path and not os.path.exists(os.path.expanduser(profile.drive_path)):
            return Precondition.DRIVE_NOT_MOUNTED
        if not self.script_exists():
            return Precondition.SCRIPT_NOT_FOUND
        if not profile.config_path.exists():
            return Precondition.CONFIG_NOT_FOUND
        return Precondition.OK

    def run(self, profile: Profile) -> Optional[int]:
        """
        Run the engine for one profile and block until it exits.

        Returns the exit code, or None when the process could not be started or
        was abandoned because the runner is shutting down.
        """
        argv = [os.path.expanduser(c) for c in self.command] + [str(profile.config_path)]
        log_action(logger, "ENGINE", f"[{profile.name}] starting: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            log_action(logger, "ENGINE", f"[{profile.name}] failed to start | {e}", level=logging.ERROR)
            return None

        with self._lock:
            self._procs.add(proc)
        try:
            while True:
                try:
                    code = proc.wait(timeout=self.poll_sec)
                    break
                except subprocess.TimeoutExpired:
                    if self._stop.is_set():
                        # the engine owns its lock file; leave it running
                        logger.info("[%s] not waiting for engine pid %d any longer", profile.name, proc.pid)
                        return None
        finally:
            with self._lock:
                self._procs.discard(proc)

        level = logging.INFO if code == 0 else logging.WARNING
        log_action(logger, "ENGINE", f"[{profile.name}] exited with code {code}", level=level)
        return code

    def shutdown(self) -> None:
        self._stop.set()

    @property
    def running(self) -> int:
        with self._lock:
            return len(self._procs)

