from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from ..models.activity_log import ActivityLogEntry
from .recipient_store import EMAIL_CONFIGS_DDL

"""PostgreSQL activity log repository (psycopg2).

``emails_sent`` is stored as JSONB in the ActivityLogEntry.to_dict layout so
that the JSONL and PostgreSQL backends share one schema. The cursor's
connection is expected to be in autocommit mode or committed by the caller.
"""

__all__ = [
    "PostgresActivityLogRepository",
    "ACTIVITY_LOGS_DDL",
    "ensure_schema",
]

ACTIVITY_LOGS_DDL = """
CREATE TABLE IF NOT EXISTS activity_logs (
    id              BIGSERIAL PRIMARY KEY,
    file_name       TEXT NOT NULL,
    file_path       TEXT,
    upload_date     TIMESTAMPTZ NOT NULL DEFAULT now(),
    total_records   INTEGER NOT NULL,
    emails_sent     JSONB NOT NULL DEFAULT '[]'::jsonb,
    overall_status  TEXT NOT NULL CHECK (overall_status IN ('completed', 'partial', 'failed')),
    uploaded_by     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS activity_logs_upload_date_idx ON activity_logs (upload_date DESC);
CREATE INDEX IF NOT EXISTS activity_logs_uploaded_by_idx ON activity_logs (uploaded_by)
"""

_COLUMNS = "id, file_name, file_path, upload_date, total_records, emails_sent, overall_status, uploaded_by"


def ensure_schema(cursor: Any) -> None:
    """Create the dispatcher's tables if missing."""
    cursor.execute(EMAIL_CONFIGS_DDL)
    cursor.execute(ACTIVITY_LOGS_DDL)


def _row_to_entry(row: tuple[Any, ...]) -> ActivityLogEntry:
    entry_id, file_name, file_path, upload_date, total, emails_sent, status, uploaded_by = row
    return ActivityLogEntry.from_dict(
        {
            "id": str(entry_id),
            "file_name": file_name,
            "file_path": file_path,
            "upload_date": upload_date,
            "total_records": total,
            "emails_sent": emails_sent or [],
            "overall_status": status,
            "uploaded_by": uploaded_by,
        }
    )


class PostgresActivityLogRepository:
    def __init__(self, cursor: Any) -> None:
        self.cursor = cursor

    def add(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        data = entry.to_dict()
        self.cursor.execute(
            "INSERT INTO activity_logs "
            "(file_name, file_path, upload_date, total_records, emails_sent, overall_status, uploaded_by) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING id",
            (
                entry.file_name,
                entry.file_path,
                entry.upload_date,
                entry.total_records,
                Json(data["emails_sent"]),
                entry.overall_status.value,
                entry.uploaded_by,
            ),
        )
        (new_id,) = self.cursor.fetchone()
        return entry.with_id(str(new_id))

    def list_page(self, page: int = 1, limit: int = 20) -> tuple[list[ActivityLogEntry], int]:
        offset = max(page - 1, 0) * limit
        self.cursor.execute(
            f"SELECT {_COLUMNS} FROM activity_logs ORDER BY upload_date DESC LIMIT %s OFFSET %s",
            (limit, offset),
        )
        rows = self.cursor.fetchall()
        self.cursor.execute("SELECT count(*) FROM activity_logs")
        (total,) = self.cursor.fetchone()
        return [_row_to_entry(r) for r in rows], int(total)

    def get(self, entry_id: str) -> ActivityLogEntry | None:
        if not str(entry_id).isdigit():
            return None
        self.cursor.execute(f"SELECT {_COLUMNS} FROM activity_logs WHERE id = %s", (int(entry_id),))
        row = self.cursor.fetchone()
        return _row_to_entry(row) if row else None

    def purge_older_than(self, cutoff: datetime) -> list[ActivityLogEntry]:
        self.cursor.execute(
            f"DELETE FROM activity_logs WHERE upload_date < %s RETURNING {_COLUMNS}",
            (cutoff,),
        )
        return [_row_to_entry(r) for r in self.cursor.fetchall()]
