"""
bisync-watch (no UI)
- Tails each enabled profile's engine log and tracks its status
  (idle / syncing / error / drive not mounted).
- Watches each profile's local root and runs the engine after local changes settle.
- Cleans up stale engine locks on startup and follows runs already in progress.
- Remembers its settings across restarts via ~/.bisync_watch/config.json

Usage
  pip install bisync-watch
  bisync-watch
  bisync-watch --profiles ~/profiles.json --engine "bash ~/.local/bin/bisync-watch-sync.sh" --sync-now
"""

from __future__ import annotations

import logging
import signal
import sys
import time
from dataclasses import replace
from typing import Optional

from bisync_watch.config import (
    CONFIG_PATH,
    ProfileError,
    ProfileStore,
    build_effective_config,
    parse_args,
    save_config_file,
    validate_config,
    validate_profile,
    write_engine_config,
)
from bisync_watch.logsetup import setup_logger
from bisync_watch.supervisor import Supervisor


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def prepare_profiles(store: ProfileStore, logger: logging.Logger) -> list:
    """Enabled profiles that fail validation are kept but not watched."""
    prepared = []
    for profile in store.profiles:
        if profile.enabled:
            try:
                validate_profile(profile)
                write_engine_config(profile)
            except ProfileError as e:
                logger.error("Config error: %s (profile disabled for this run)", e)
                profile = replace(profile, enabled=False)
            except OSError as e:
                logger.error("Could not write engine config for %s: %s", profile.name, e)
        prepared.append(profile)
    return prepared


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = build_effective_config(args)
    except ValueError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(cfg.log_dir, debug=cfg.debug)

    try:
        validate_config(cfg)
        store = ProfileStore(cfg.profiles_path)
        store.load()
        logger.info("Profiles: %s (%d, %d enabled)", cfg.profiles_path, len(store.profiles), len(store.enabled()))
        logger.info("Engine  : %s", " ".join(cfg.engine_command))
    except ValueError as e:
        logger.error("Config error: %s", e)
        return 2

    try:
        save_config_file(cfg)
        logger.info("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    profiles = prepare_profiles(store, logger)
    supervisor = Supervisor.from_config(cfg, store, profiles)

    signal.signal(signal.SIGTERM, _raise_interrupt)

    logger.info("Starting supervisor... (Ctrl+C to stop)")
    try:
        supervisor.start()
        if args.sync_now:
            supervisor.trigger_manual_sync()
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        supervisor.stop()
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
