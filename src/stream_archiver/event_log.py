"""Persistent operator-facing event log for captures and replays."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)

EVENT_CATEGORIES: tuple[str, ...] = ("system", "capture", "replay", "archive")


@dataclass(slots=True)
class EventLogEntry:
    """A single capture, replay or archive event."""

    timestamp: float
    category: str
    event: str
    message: str
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        if not isinstance(category, str) or category not in EVENT_CATEGORIES:
            category = "system"
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category,
            event=event,
            message=message,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Bounded in-memory event history mirrored to a JSON lines file.

    Persistence is best effort: a file that cannot be written degrades the
    log to memory only and the failure is reported through :mod:`logging`.
    """

    def __init__(
        self,
        path: Path | str | None = Path("data/event_log.jsonl"),
        *,
        max_entries: int = 1000,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
    ) -> EventLogEntry:
        if category not in EVENT_CATEGORIES:
            raise ValueError(f"Unknown event category {category!r}")
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = EventLogEntry(
            timestamp=time.time(),
            category=category,
            event=event,
            message=message,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[EventLogEntry]:
        """Return the newest entries, oldest first."""

        with self._lock:
            entries: Iterable[EventLogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category]
        entries = list(entries)
        if limit is not None:
            limit = max(1, int(limit))
            entries = entries[-limit:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entry = EventLogEntry.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log entry: %s", exc)


__all__ = ["EVENT_CATEGORIES", "EventLog", "EventLogEntry"]
