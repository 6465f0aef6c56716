"""
Value types shared by the parser, the state machine and the supervisor.

- FileChange: one file operation reported by the engine (immutable).
- SyncProgress / TransferringFile: latest stats snapshot for a running sync.
- ParsedEvent: tagged union produced by the log parser.
- ProfileStatus: per-profile status, plus the worst-state-wins aggregate.
"""

from __future__ import annotations

import datetime as dt
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Union

from bisync_watch.formatters import format_bytes, format_eta, format_speed


# -------------------------
# File changes
# -------------------------

class Operation(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"

    @property
    def label(self) -> str:
        return _OPERATION_LABELS[self]


_OPERATION_LABELS = {
    Operation.CREATE: "Copied",
    Operation.MODIFY: "Updated",
    Operation.DELETE: "Deleted",
    Operation.RENAME: "Renamed",
}


@dataclass(frozen=True)
class FileChange:
    operation: Operation
    path: str
    timestamp: dt.datetime = field(default_factory=dt.datetime.now)

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.path.rstrip("/")) or self.path

    @property
    def directory(self) -> str:
        parent = posixpath.dirname(self.path.rstrip("/"))
        return parent or "/"


# -------------------------
# Progress
# -------------------------

@dataclass(frozen=True)
class TransferringFile:
    name: str
    size: Optional[int] = None
    bytes: Optional[int] = None
    percentage: Optional[int] = None
    speed: Optional[float] = None
    speed_avg: Optional[float] = None
    eta: Optional[int] = None

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.name)

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.name) or "/"


@dataclass(frozen=True)
class SyncProgress:
    """Latest stats record emitted by the engine while a sync runs."""

    bytes_transferred: int = 0
    total_bytes: int = 0
    speed: Optional[float] = None
    eta: Optional[int] = None
    transfers_done: int = 0
    total_transfers: int = 0
    checks_done: int = 0
    total_checks: int = 0
    elapsed_time: Optional[float] = None
    errors: int = 0
    transferring: tuple[TransferringFile, ...] = ()

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.bytes_transferred * 100.0 / self.total_bytes)

    @property
    def formatted_transfer_line(self) -> str:
        line = f"{format_bytes(self.bytes_transferred)} / {format_bytes(self.total_bytes)}"
        if self.speed:
            line += f" @ {format_speed(self.speed)}"
        if self.eta is not None:
            line += f", ETA {format_eta(self.eta)}"
        return line


# -------------------------
# Parsed events
# -------------------------

@dataclass(frozen=True)
class SyncStarted:
    pass


@dataclass(frozen=True)
class SyncCompleted:
    pass


@dataclass(frozen=True)
class SyncFailed:
    exit_code: int
    message: Optional[str] = None


@dataclass(frozen=True)
class DriveNotMounted:
    pass


@dataclass(frozen=True)
class AlreadyRunning:
    pass


@dataclass(frozen=True)
class FileChanged:
    change: FileChange


@dataclass(frozen=True)
class Stats:
    progress: SyncProgress


@dataclass(frozen=True)
class ErrorMessage:
    text: str


@dataclass(frozen=True)
class Unknown:
    pass


EventKind = Union[
    SyncStarted,
    SyncCompleted,
    SyncFailed,
    DriveNotMounted,
    AlreadyRunning,
    FileChanged,
    Stats,
    ErrorMessage,
    Unknown,
]


@dataclass(frozen=True)
class ParsedEvent:
    kind: EventKind
    timestamp: dt.datetime
    raw_line: str


# -------------------------
# Status
# -------------------------

class StatusKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    IDLE = "idle"
    DRIVE_NOT_MOUNTED = "drive_not_mounted"
    SYNCING = "syncing"
    ERROR = "error"

    @property
    def precedence(self) -> int:
        return _PRECEDENCE[self]


# worst state wins
_PRECEDENCE = {
    StatusKind.NOT_CONFIGURED: 0,
    StatusKind.IDLE: 1,
    StatusKind.DRIVE_NOT_MOUNTED: 2,
    StatusKind.SYNCING: 3,
    StatusKind.ERROR: 4,
}


@dataclass(frozen=True)
class ProfileStatus:
    kind: StatusKind
    message: Optional[str] = None

    @classmethod
    def not_configured(cls) -> ProfileStatus:
        return cls(StatusKind.NOT_CONFIGURED)

    @classmethod
    def idle(cls) -> ProfileStatus:
        return cls(StatusKind.IDLE)

    @classmethod
    def syncing(cls) -> ProfileStatus:
        return cls(StatusKind.SYNCING)

    @classmethod
    def drive_not_mounted(cls) -> ProfileStatus:
        return cls(StatusKind.DRIVE_NOT_MOUNTED)

    @classmethod
    def error(cls, message: str) -> ProfileStatus:
        return cls(StatusKind.ERROR, message)

    @property
    def is_error(self) -> bool:
        return self.kind is StatusKind.ERROR

    @property
    def text(self) -> str:
        if self.kind is StatusKind.ERROR:
            return f"Error: {self.message or 'Unknown error'}"
        return _STATUS_TEXT[self.kind]


_STATUS_TEXT = {
    StatusKind.NOT_CONFIGURED: "Setup required",
    StatusKind.IDLE: "Idle",
    StatusKind.DRIVE_NOT_MOUNTED: "Drive not mounted",
    StatusKind.SYNCING: "Syncing...",
}


def aggregate_status(statuses: Iterable[ProfileStatus]) -> ProfileStatus:
    """Fold per-profile statuses into one; the first error seen supplies the message."""
    worst: Optional[ProfileStatus] = None
    for status in statuses:
        if worst is None or status.kind.precedence > worst.kind.precedence:
            worst = status
    return worst if worst is not None else ProfileStatus.not_configured()
