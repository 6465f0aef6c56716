"""
Configuration: sync profiles, the profile store, and the app-level settings.

App settings resolve as CLI flags > saved ~/.bisync_watch/config.json > defaults.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import tempfile
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

APP_DIR = Path.home() / ".bisync_watch"
CONFIG_PATH = APP_DIR / "config.json"
PROFILES_PATH = APP_DIR / "profiles.json"
ENGINE_CONFIG_DIR = APP_DIR / "profiles"
DEFAULT_LOG_DIR = APP_DIR / "logs"
ENGINE_LOG_DIR = Path.home() / ".local" / "log"
DEFAULT_ENGINE_SCRIPT = Path.home() / ".local" / "bin" / "bisync-watch-sync.sh"

DEFAULT_INTERVAL_MINUTES = 15
DEFAULT_DEBOUNCE_SEC = 5.0
DEFAULT_LOCK_POLL_SEC = 3.0
DEFAULT_MOUNT_POLL_SEC = 5.0


class ProfileError(ValueError):
    pass


# -------------------------
# Profiles
# -------------------------

@dataclass(frozen=True)
class Profile:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    remote: str = ""
    remote_path: str = ""
    local_path: str = ""
    drive_path: str = ""
    enabled: bool = False
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    additional_flags: str = ""
    # empty = derived from short_id
    log_file: str = ""
    lock_file: str = ""
    config_file: str = ""

    @property
    def short_id(self) -> str:
        return self.id.replace("-", "")[:8].lower()

    @property
    def log_path(self) -> Path:
        if self.log_file:
            return Path(self.log_file).expanduser()
        return ENGINE_LOG_DIR / f"bisync-watch-sync-{self.short_id}.log"

    @property
    def lock_path(self) -> Path:
        if self.lock_file:
            return Path(self.lock_file).expanduser()
        return Path(tempfile.gettempdir()) / f"bisync-watch-sync-{self.short_id}.lock"

    @property
    def config_path(self) -> Path:
        if self.config_file:
            return Path(self.config_file).expanduser()
        return ENGINE_CONFIG_DIR / f"{self.short_id}.json"

    @property
    def local_root(self) -> Path:
        return Path(self.local_path).expanduser()

    @property
    def full_remote(self) -> str:
        """remote + remote path joined by exactly one colon ("nas:" + "Docs" -> "nas:Docs")."""
        remote = self.remote[:-1] if self.remote.endswith(":") else self.remote
        if not self.remote_path:
            return f"{remote}:"
        return f"{remote}:{self.remote_path}"

    @property
    def is_valid(self) -> bool:
        return bool(self.name and self.remote and self.remote_path and self.local_path)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Profile":
        if not isinstance(data, dict):
            raise ProfileError(f"Profile entry must be an object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if not kwargs.get("id"):
            kwargs.pop("id", None)
        if not isinstance(kwargs.get("enabled", True), bool):
            raise ProfileError(f"Invalid profile {data.get('name', '?')!r}: enabled must be true or false, got {kwargs['enabled']!r}")
        try:
            profile = cls(**kwargs)
            return replace(profile, interval_minutes=int(profile.interval_minutes))
        except (TypeError, ValueError) as e:
            raise ProfileError(f"Invalid profile {data.get('name', '?')!r}: {e}") from e


def validate_profile(profile: Profile) -> Profile:
    missing = [
        label
        for label, value in (
            ("name", profile.name),
            ("remote", profile.remote),
            ("remote path", profile.remote_path),
            ("local path", profile.local_path),
        )
        if not str(value).strip()
    ]
    if missing:
        raise ProfileError(f"Profile {profile.name or profile.id!r} is missing: {', '.join(missing)}")
    if profile.interval_minutes < 1:
        raise ProfileError(f"Profile {profile.name!r}: interval must be at least 1 minute")
    return profile


class ProfileStore:
    """JSON-file-backed list of profiles. Not thread-safe; owned by one caller."""

    def __init__(self, path: str | Path = PROFILES_PATH):
        self.path = Path(path).expanduser()
        self.profiles: list[Profile] = []

    def load(self) -> list[Profile]:
        if not self.path.exists():
            self.profiles = []
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ProfileError(f"Could not read profiles from {self.path}: {e}") from e
        items = raw.get("profiles", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            raise ProfileError(f"{self.path}: expected a list of profiles")
        self.profiles = [Profile.from_dict(item) for item in items]
        return list(self.profiles)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"profiles": [p.to_dict() for p in self.profiles]}
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, profile_id: str) -> Optional[Profile]:
        for p in self.profiles:
            if p.id == profile_id:
                return p
        return None

    def enabled(self) -> list[Profile]:
        return [p for p in self.profiles if p.enabled]

    def add(self, profile: Profile) -> Profile:
        if self.get(profile.id) is not None:
            raise ProfileError(f"Profile id already exists: {profile.id}")
        self.profiles.append(profile)
        self.save()
        return profile

    def update(self, profile: Profile) -> Profile:
        for i, p in enumerate(self.profiles):
            if p.id == profile.id:
                self.profiles[i] = profile
                self.save()
                return profile
        raise ProfileError(f"Unknown profile: {profile.id}")

    def delete(self, profile_id: str) -> bool:
        before = len(self.profiles)
        self.profiles = [p for p in self.profiles if p.id != profile_id]
        if len(self.profiles) == before:
            return False
        self.save()
        return True


def engine_config_payload(profile: Profile) -> dict:
    return {
        "profileId": profile.id,
        "name": profile.name,
        "remote": profile.full_remote,
        "localPath": str(profile.local_root),
        "logPath": str(profile.log_path),
        "lockFile": str(profile.lock_path),
        "drivePath": profile.drive_path,
        "additionalFlags": profile.additional_flags,
        "syncIntervalMinutes": profile.interval_minutes,
    }


def write_engine_config(profile: Profile) -> Path:
    """Write the per-profile JSON the engine reads from its first argument."""
    path = profile.config_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(engine_config_payload(profile), indent=2), encoding="utf-8")
    logger.debug("Wrote engine config for %s: %s", profile.name, path)
    return path


# -------------------------
# App config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    profiles_path: Path
    log_dir: Path
    engine_command: tuple[str, ...]
    debounce_sec: float = DEFAULT_DEBOUNCE_SEC
    lock_poll_sec: float = DEFAULT_LOCK_POLL_SEC
    mount_poll_sec: float = DEFAULT_MOUNT_POLL_SEC
    debug: bool = False


def default_engine_command() -> tuple[str, ...]:
    return ("bash", str(DEFAULT_ENGINE_SCRIPT))


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="bisync-watch", description="Supervise scheduled bisync jobs and report their status.")
    p.add_argument("--profiles", type=str, default=None, help="Profiles JSON file.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for this tool's own log files.")
    p.add_argument("--engine", type=str, default=None, help='Engine command, e.g. "bash ~/.local/bin/bisync-watch-sync.sh".')
    p.add_argument("--debounce", type=float, default=None, help="Seconds of quiet before a directory change triggers a sync.")
    p.add_argument("--sync-now", action="store_true", help="Run every enabled profile once after startup.")
    p.add_argument("--debug", action="store_true", help="Verbose watcher diagnostics.")
    return p.parse_args(argv)


def load_config_file(path: Path = CONFIG_PATH) -> dict:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
            logger.warning("Ignoring %s: not a JSON object", path)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
    return {}


def save_config_file(cfg: AppConfig, path: Path = CONFIG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "profiles": str(cfg.profiles_path),
        "log_dir": str(cfg.log_dir),
        "engine_command": list(cfg.engine_command),
        "debounce_sec": cfg.debounce_sec,
        "lock_poll_sec": cfg.lock_poll_sec,
        "mount_poll_sec": cfg.mount_poll_sec,
        "debug": cfg.debug,
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _split_command(raw) -> tuple[str, ...]:
    if isinstance(raw, str):
        try:
            return tuple(shlex.split(raw))
        except ValueError as e:
            raise ValueError(f"Invalid engine command {raw!r}: {e}") from e
    return tuple(str(tok) for tok in raw)


def build_effective_config(args: argparse.Namespace, saved: Optional[dict] = None) -> AppConfig:
    if saved is None:
        saved = load_config_file()

    saved_profiles = Path(saved["profiles"]) if saved.get("profiles") else None
    saved_log = Path(saved["log_dir"]) if saved.get("log_dir") else None
    saved_engine = _split_command(saved["engine_command"]) if saved.get("engine_command") else None

    profiles_path = Path(args.profiles) if args.profiles else (saved_profiles or PROFILES_PATH)
    log_dir = Path(args.log_dir) if args.log_dir else (saved_log or DEFAULT_LOG_DIR)
    engine = _split_command(args.engine) if args.engine else (saved_engine or default_engine_command())

    try:
        debounce = float(args.debounce) if args.debounce is not None else float(saved.get("debounce_sec", DEFAULT_DEBOUNCE_SEC))
        lock_poll = float(saved.get("lock_poll_sec", DEFAULT_LOCK_POLL_SEC))
        mount_poll = float(saved.get("mount_poll_sec", DEFAULT_MOUNT_POLL_SEC))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid number in config: {e}") from e

    return AppConfig(
        profiles_path=profiles_path.expanduser(),
        log_dir=log_dir.expanduser(),
        engine_command=engine,
        debounce_sec=debounce,
        lock_poll_sec=lock_poll,
        mount_poll_sec=mount_poll,
        debug=bool(args.debug or saved.get("debug", False)),
    )


def validate_config(cfg: AppConfig) -> AppConfig:
    if not cfg.engine_command:
        raise ValueError("Engine command must not be empty.")
    for label, value in (
        ("debounce", cfg.debounce_sec),
        ("lock poll interval", cfg.lock_poll_sec),
        ("mount poll interval", cfg.mount_poll_sec),
    ):
        if value <= 0:
            raise ValueError(f"The {label} must be positive, got {value}.")
    if cfg.profiles_path.exists() and cfg.profiles_path.is_dir():
        raise ValueError(f"Profiles path is a directory: {cfg.profiles_path}")
    cfg.log_dir.mkdir(parents=True, exist_ok=True)
    return cfg
