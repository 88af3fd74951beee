"""Structured request events, one JSON object per stdout line."""

from __future__ import annotations

import json
from datetime import datetime, timezone


class EventLog:
    """Emits request events for the platform's log collector.

    Output goes to stdout (captured by Cloud Run / container logging), so
    each event is a single flushed line.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def emit(self, level: str, message: str, **fields) -> None:
        if not self.enabled:
            return

        entry = {"level": level, "message": message, **fields}
        entry["time"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        print(json.dumps(entry, default=str), flush=True)

    def info(self, message: str, **fields) -> None:
        self.emit("info", message, **fields)

    def warn(self, message: str, **fields) -> None:
        self.emit("warn", message, **fields)

    def error(self, message: str, **fields) -> None:
        self.emit("error", message, **fields)
