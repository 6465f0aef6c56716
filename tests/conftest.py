"""Shared fixtures for bisync_watch tests."""

import datetime as dt
import threading
import time
from pathlib import Path

import pytest

from bisync_watch.config import Profile
from bisync_watch.models import FileChange, Operation, ParsedEvent


class RecordingNotifier:
    """Notifier that keeps every notification it is sent."""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, notification):
        with self._lock:
            self.sent.append(notification)

    def kinds(self):
        with self._lock:
            return [n.kind for n in self.sent]

    def of_kind(self, kind):
        with self._lock:
            return [n for n in self.sent if n.kind == kind]


def wait_for(predicate, timeout=10.0, interval=0.05):
    """Poll predicate until it returns truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def plain(message, when="2024-05-01 10:00:00"):
    return f"{when} - {message}"


def event(kind, when=None):
    return ParsedEvent(kind, when or dt.datetime(2024, 5, 1, 10, 0, 0), "")


def change(path, op=Operation.CREATE):
    return FileChange(op, path, dt.datetime(2024, 5, 1, 10, 0, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_profile(tmp_path: Path):
    """Factory for profiles whose log, lock, config and sync root live under tmp_path."""

    def factory(name="Docs", **overrides):
        base = tmp_path / name
        root = base / "root"
        root.mkdir(parents=True, exist_ok=True)
        values = dict(
            name=name,
            remote="nas:",
            remote_path=name,
            local_path=str(root),
            enabled=True,
            log_file=str(base / "sync.log"),
            lock_file=str(base / "sync.lock"),
            config_file=str(base / "engine.json"),
        )
        values.update(overrides)
        return Profile(**values)

    return factory
