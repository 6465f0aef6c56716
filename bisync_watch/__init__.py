"""bisync-watch - status supervisor for scheduled bisync jobs.

Follows each sync profile's engine log and local root, turns what it sees into
a per-profile status, and runs the external engine on demand or after local
changes settle.

Example:
    from bisync_watch import Profile, Supervisor

    profile = Profile(name="Docs", remote="nas:", remote_path="Docs",
                      local_path="~/Docs", enabled=True)
    sup = Supervisor([profile])
    sup.start()
    print(sup.aggregate_status().text)
    sup.stop()
"""

from bisync_watch.config import AppConfig, Profile, ProfileError, ProfileStore, write_engine_config
from bisync_watch.dirwatch import DirectoryWatcher, NoiseFilter
from bisync_watch.engine import EngineRunner
from bisync_watch.locks import LockPoller, LockRecord, read_last_error_from_log, remove_stale_lock
from bisync_watch.models import (
    FileChange,
    Operation,
    ParsedEvent,
    ProfileStatus,
    StatusKind,
    SyncProgress,
    aggregate_status,
)
from bisync_watch.notify import LogNotifier, Notification, NotificationBatcher, Notifier
from bisync_watch.parser import parse_line
from bisync_watch.state import ProfileStateMachine
from bisync_watch.supervisor import Supervisor, WatcherHandle
from bisync_watch.tailer import LogTailer

__version__ = "0.1.0"

__all__ = [
    # Core
    "Supervisor",
    "WatcherHandle",
    "ProfileStateMachine",
    # Config
    "AppConfig",
    "Profile",
    "ProfileError",
    "ProfileStore",
    "write_engine_config",
    # Watching
    "LogTailer",
    "DirectoryWatcher",
    "NoiseFilter",
    "parse_line",
    # Engine / locks
    "EngineRunner",
    "LockPoller",
    "LockRecord",
    "read_last_error_from_log",
    "remove_stale_lock",
    # Models
    "FileChange",
    "Operation",
    "ParsedEvent",
    "ProfileStatus",
    "StatusKind",
    "SyncProgress",
    "aggregate_status",
    # Notifications
    "LogNotifier",
    "Notification",
    "NotificationBatcher",
    "Notifier",
    # Metadata
    "__version__",
]
