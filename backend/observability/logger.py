"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout
- No buffering, no batching
- Level threshold configured once at startup (LOG_LEVEL)
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
import time
from typing import Any, Mapping, Callable


LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
    "fatal": 50,
}

_DEFAULT_LEVEL = "info"


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print

_threshold: int = LEVELS[_DEFAULT_LEVEL]


def set_level(level: str) -> None:
    """
    Set the process-wide minimum level.

    Unknown names fall back to "info" ("warn" is accepted for "warning").
    """
    global _threshold  # pylint: disable=global-statement
    name = level.strip().lower()
    if name == "warn":
        name = "warning"
    _threshold = LEVELS.get(name, LEVELS[_DEFAULT_LEVEL])


def is_enabled(level: str) -> bool:
    return LEVELS.get(level, LEVELS[_DEFAULT_LEVEL]) >= _threshold


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event to stdout.

    The caller supplies a fully-formed event dict. "level" defaults to
    "info"; "ts_ms" is stamped when missing.

    This function:
    - Drops events below the configured level
    - Serializes to JSON
    - Writes exactly one line
    - Never raises
    """
    level = str(event.get("level", _DEFAULT_LEVEL))
    if not is_enabled(level):
        return

    payload: dict[str, Any] = {"ts_ms": time.time_ns() // 1_000_000, "level": level}
    payload.update(event)

    try:
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the event path
        fallback: dict[str, Any] = {
            "ts_ms": payload.get("ts_ms"),
            "level": level,
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
