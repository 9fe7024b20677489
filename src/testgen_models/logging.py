"""Structured JSON logging."""

from __future__ import annotations

import json
import sys
import time
from typing import Any

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}
_threshold = _LEVELS["info"]


def set_log_level(level: str) -> None:
    """Drop events below ``level`` (debug | info | warning | error)."""
    global _threshold
    _threshold = _LEVELS.get(level.lower(), _LEVELS["info"])


def log_event(
    event: str,
    *,
    model: str | None = None,
    level: str = "info",
    **extra: Any,
) -> None:
    """Write a structured JSON log line to stderr."""
    if _LEVELS.get(level, _LEVELS["info"]) < _threshold:
        return
    record: dict[str, Any] = {
        "ts": time.time(),
        "level": level,
        "event": event,
    }
    if model is not None:
        record["model"] = model
    record.update(extra)
    try:
        print(json.dumps(record, default=str), file=sys.stderr)
    except Exception:
        pass  # logging failures must not crash the request
