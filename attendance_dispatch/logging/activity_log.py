from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path

from ..models.activity_log import ActivityLogEntry

"""JSON Lines activity log store.

Default audit backend when the database is disabled:
- one ActivityLogEntry per line, fixed schema (``ActivityLogEntry.to_dict``)
- append-only for new runs; the retention sweep rewrites the file without the
  expired entries
- serial execution, no locking
"""

__all__ = [
    "JsonlActivityLogStore",
]

DEFAULT_LOG_PATH = Path("./logs/activity-log.jsonl")


class JsonlActivityLogStore:
    def __init__(self, path: Path = DEFAULT_LOG_PATH) -> None:
        self.path = path

    def _read_all(self) -> list[ActivityLogEntry]:
        if not self.path.exists():
            return []
        entries: list[ActivityLogEntry] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(ActivityLogEntry.from_dict(json.loads(line)))
        return entries

    def add(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        stored = entry.with_id(entry.id or uuid.uuid4().hex)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(stored.to_json_line() + "\n")
        return stored

    def list_page(self, page: int = 1, limit: int = 20) -> tuple[list[ActivityLogEntry], int]:
        """Newest first."""
        entries = sorted(self._read_all(), key=lambda e: e.upload_date, reverse=True)
        start = max(page - 1, 0) * limit
        return entries[start:start + limit], len(entries)

    def get(self, entry_id: str) -> ActivityLogEntry | None:
        for entry in self._read_all():
            if entry.id == entry_id:
                return entry
        return None

    def purge_older_than(self, cutoff: datetime) -> list[ActivityLogEntry]:
        """Remove entries uploaded before ``cutoff`` and return them."""
        entries = self._read_all()
        expired = [e for e in entries if e.upload_date < cutoff]
        if not expired:
            return []
        kept = [e for e in entries if e.upload_date >= cutoff]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for e in kept:
                f.write(e.to_json_line() + "\n")
        tmp.replace(self.path)
        return expired
