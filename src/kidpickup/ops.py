"""Operational utilities for KidPickup."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

from .models import utcnow


class HealthMonitor:
    """Aggregate runtime health information for status pages."""

    def __init__(self) -> None:
        self.backend_online = True
        self.live_updates = True

    def status(self) -> dict:
        return {
            "backend": "ok" if self.backend_online else "down",
            "live_updates": "ok" if self.live_updates else "degraded",
        }


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, clock: Optional[Callable] = None) -> None:
        self.path = path
        self._clock = clock or utcnow
        self._entries: list[dict] = []

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": self._clock().isoformat(), "event": event_type, **fields}
        self._entries.append(entry)
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["HealthMonitor", "StructuredLogger"]
