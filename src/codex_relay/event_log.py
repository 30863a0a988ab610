"""Append-only structured event log for hook activity.

Every component reports what it did here. Each event is written as one JSON
line to a combined ``hook-events.jsonl`` and to a per-category file
(``stop-events.jsonl``, ``sessionstart-events.jsonl``, ...). Recording is
best-effort: an unwritable log directory never interrupts the caller.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from collections import Counter, deque
from pathlib import Path
from typing import Any

from codex_relay.file_io import append_line

logger = logging.getLogger(__name__)

COMBINED_LOG_NAME = "hook-events.jsonl"
_MAX_RAW_CHARS = 500


def _truncate(text: str, max_len: int) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


def utc_timestamp(now: dt.datetime | None = None) -> str:
    """Return a second-resolution UTC ISO-8601 timestamp with a ``Z`` suffix."""
    moment = now or dt.datetime.now(dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class EventLog:
    """JSON-lines event sink with a combined file and one file per category."""

    def __init__(self, log_dir: str | Path, *, session_id: str = "") -> None:
        self.log_dir = Path(log_dir)
        self.combined_path = self.log_dir / COMBINED_LOG_NAME
        self.session_id = str(session_id or "").strip()
        self._lock = threading.Lock()

    def category_path(self, category: str) -> Path:
        key = (str(category or "unknown").strip() or "unknown").lower()
        return self.log_dir / f"{key}-events.jsonl"

    def record(
        self,
        category: str,
        name: str,
        event: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append one event. Never raises."""
        try:
            payload = {
                "timestamp": utc_timestamp(),
                "category": str(category or "unknown"),
                "name": str(name or "unknown"),
                "event": str(event or "unknown"),
                "session_id": self.session_id or None,
                "data": self._coerce_data(data),
            }
            line = json.dumps(payload, ensure_ascii=False)
            with self._lock:
                append_line(self.combined_path, line)
                append_line(self.category_path(payload["category"]), line)
        except Exception as exc:
            logger.debug("Dropped event %s/%s/%s: %s", category, name, event, exc)

    @staticmethod
    def _coerce_data(data: Any) -> Any:
        if data is None:
            return {}
        try:
            json.dumps(data)
        except (TypeError, ValueError):
            return {"raw": _truncate(repr(data), _MAX_RAW_CHARS), "parse_error": True}
        return data

    def recent(self, limit: int = 10, category: str | None = None) -> list[dict[str, Any]]:
        """Return up to *limit* most recent events, oldest first."""
        wanted = (category or "").strip()
        tail: deque[dict[str, Any]] = deque(maxlen=max(1, int(limit)))
        for entry in self._iter_entries():
            if wanted and entry.get("category") != wanted:
                continue
            tail.append(entry)
        return list(tail)

    def summary(self) -> list[dict[str, Any]]:
        """Event counts per category, most frequent first."""
        counts = Counter(str(entry.get("category", "unknown")) for entry in self._iter_entries())
        return [
            {"category": category, "count": count}
            for category, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def _iter_entries(self):
        try:
            handle = self.combined_path.open(encoding="utf-8", errors="replace")
        except OSError:
            return
        with handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skip invalid event line in %s", self.combined_path)
                    continue
                if isinstance(entry, dict):
                    yield entry
