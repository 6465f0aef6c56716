"""
Phrase vocabulary shared by the parser, the state machine and the log-tail reader.

All matching is case-insensitive substring membership. The engine wrapper writes
plain markers ("Starting bisync", "Bisync completed successfully",
"Bisync failed with exit code N", ...); the engine itself writes JSON records whose
``msg`` may carry the same failure wording.
"""

from __future__ import annotations

import re
from typing import Optional

ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

START_PHRASES = ("starting bisync", "starting sync")
COMPLETED_PHRASES = ("completed successfully",)
FAILURE_PHRASES = (
    "failed with exit code",
    "failed to bisync",
    "bisync aborted",
    "bisync critical error",
)
DRIVE_NOT_MOUNTED_PHRASES = ("drive not mounted",)
ALREADY_RUNNING_PHRASES = ("already running",)

# Emitted on the first run against a fresh baseline; not a real failure.
TRANSIENT_FAILURE_PHRASES = ("all files were changed",)

BOILERPLATE_PREFIXES = (
    "bisync critical error: ",
    "failed to bisync: ",
    "bisync aborted: ",
    "error : ",
)

# Most actionable first. Anything unmatched ranks below every entry.
ACTIONABLE_KEYWORDS = (
    "lock file",
    "check file",
    "access test failed",
    "out of sync",
    "resync",
    "failed to initialise",
    "malformed rule",
    "critical",
)

# Generic wrapper messages that never explain what went wrong.
GENERIC_FAILURE_MESSAGES = ("bisync aborted", "failed to bisync")

EXIT_CODE_RE = re.compile(r"exit code\s*:?\s*(-?\d+)", re.IGNORECASE)

UNKNOWN_EXIT_CODE = -1
MAX_ERROR_LENGTH = 200


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def _contains_any(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in phrases)


def is_sync_started(message: str) -> bool:
    return _contains_any(message, START_PHRASES)


def is_sync_completed(message: str) -> bool:
    return _contains_any(message, COMPLETED_PHRASES)


def is_sync_failed(message: str) -> bool:
    return _contains_any(message, FAILURE_PHRASES)


def is_drive_not_mounted(message: str) -> bool:
    return _contains_any(message, DRIVE_NOT_MOUNTED_PHRASES)


def is_already_running(message: str) -> bool:
    return _contains_any(message, ALREADY_RUNNING_PHRASES)


def is_transient_failure(message: Optional[str]) -> bool:
    return bool(message) and _contains_any(message, TRANSIENT_FAILURE_PHRASES)


def is_generic_failure(message: str) -> bool:
    return _contains_any(message, GENERIC_FAILURE_MESSAGES)


def extract_exit_code(message: str) -> Optional[int]:
    m = EXIT_CODE_RE.search(message)
    if not m:
        return None
    try:
        return int(m.group(1))
    except ValueError:
        return None


def clean_error_message(message: str, max_length: int = MAX_ERROR_LENGTH) -> str:
    """Strip ANSI codes and known wrapper prefixes, then cap the length."""
    text = strip_ansi(message).strip()
    changed = True
    while changed:
        changed = False
        lowered = text.lower()
        for prefix in BOILERPLATE_PREFIXES:
            if lowered.startswith(prefix):
                text = text[len(prefix):].lstrip()
                changed = True
                break
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def actionable_rank(message: Optional[str]) -> int:
    """Lower is more actionable. Unmatched or empty messages rank last."""
    if not message:
        return len(ACTIONABLE_KEYWORDS) + 1
    lowered = message.lower()
    for rank, keyword in enumerate(ACTIONABLE_KEYWORDS):
        if keyword in lowered:
            return rank
    return len(ACTIONABLE_KEYWORDS)


def is_actionable(message: Optional[str]) -> bool:
    return actionable_rank(message) < len(ACTIONABLE_KEYWORDS)
