from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path, PureWindowsPath
from typing import Protocol

from ..excel.writer import XLSX_CONTENT_TYPE, Attachment, render_table_xlsx
from ..models.activity_log import ActivityLogEntry, EmailSentEntry, utc_now

"""Activity auditing.

ActivityAuditor is the single writer of ActivityLogEntry records:

- ``record_run`` persists exactly one entry per dispatch invocation; a store
  failure is logged and reported back as None, never raised
- ``cleanup_old_logs`` removes entries older than the retention horizon and
  deletes their retained upload files (best effort, per file)
- ``download`` returns the retained original upload, or regenerates an
  "Email Summary" workbook from ``emails_sent`` when the file is gone
"""

__all__ = [
    "ActivityLogStore",
    "AuditPersistenceFailure",
    "ActivityAuditor",
    "CleanupReport",
    "SUMMARY_COLUMNS",
    "build_summary_attachment",
    "clean_upload_name",
    "store_upload",
]

logger = logging.getLogger(__name__)

SUMMARY_SHEET = "Email Summary"
SUMMARY_COLUMNS = (
    "S.No",
    "Recipient",
    "Recipient Type",
    "Department",
    "Record Count",
    "Status",
    "Sent At",
    "Error Message",
)
SUMMARY_WIDTHS = (8, 35, 20, 25, 14, 10, 22, 40)
SENT_AT_FORMAT = "%d-%m-%Y %H:%M:%S"

_TRAILING_NAME_NOISE = re.compile(r"[_\s]+$")


class AuditPersistenceFailure(Exception):
    """The audit store rejected or could not write an entry."""


class ActivityLogStore(Protocol):
    def add(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...

    def list_page(self, page: int = 1, limit: int = 20) -> tuple[list[ActivityLogEntry], int]: ...

    def get(self, entry_id: str) -> ActivityLogEntry | None: ...

    def purge_older_than(self, cutoff: datetime) -> list[ActivityLogEntry]: ...


class CleanupReport:
    __slots__ = ("deleted_entries", "deleted_files", "file_errors")

    def __init__(self) -> None:
        self.deleted_entries = 0
        self.deleted_files = 0
        self.file_errors = 0

    def __repr__(self) -> str:
        return (
            f"CleanupReport(deleted_entries={self.deleted_entries}, "
            f"deleted_files={self.deleted_files}, file_errors={self.file_errors})"
        )


def clean_upload_name(name: str | None, default: str = "attendance-file.xlsx") -> str:
    """Drop directory components and trailing ``_``/spaces from the stem."""
    if not name or not name.strip():
        return default
    base = PureWindowsPath(name.strip()).name  # "/" と "\" の両方を区切りとして扱う
    stem, dot, ext = base.rpartition(".")
    if not dot:
        stem, ext = base, ""
    stem = _TRAILING_NAME_NOISE.sub("", stem)
    if not stem:
        return default
    return f"{stem}.{ext}" if ext else stem


def store_upload(data: bytes, file_name: str, upload_dir: Path, now: datetime | None = None) -> Path:
    """Write the uploaded bytes under ``upload_dir`` with a timestamp prefix."""
    stamp = (now or utc_now()).strftime("%Y%m%d%H%M%S%f")
    upload_dir.mkdir(parents=True, exist_ok=True)
    target = upload_dir / f"{stamp}-{file_name}"
    target.write_bytes(data)
    return target


def _summary_rows(entries: Iterable[EmailSentEntry]) -> list[list[str]]:
    rows: list[list[str]] = []
    for idx, e in enumerate(entries, start=1):
        rows.append(
            [
                str(idx),
                e.recipient,
                e.recipient_type.value,
                e.department or "N/A",
                str(e.record_count or 0),
                e.status.value,
                e.sent_at.strftime(SENT_AT_FORMAT),
                e.error_message or "N/A",
            ]
        )
    return rows


def build_summary_attachment(entry: ActivityLogEntry) -> Attachment:
    content = render_table_xlsx(
        SUMMARY_COLUMNS, _summary_rows(entry.emails_sent), SUMMARY_SHEET, SUMMARY_WIDTHS
    )
    stem = entry.file_name.rsplit(".", 1)[0] if "." in entry.file_name else entry.file_name
    return Attachment(f"Summary_{stem}.xlsx", content, XLSX_CONTENT_TYPE)


class ActivityAuditor:
    def __init__(self, store: ActivityLogStore, retention_hours: float = 48.0) -> None:
        self.store = store
        self.retention = timedelta(hours=retention_hours)

    def persist(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        """Write one entry to the store.

        Raises:
            AuditPersistenceFailure: the store raised (DB / file I/O error)
        """
        try:
            return self.store.add(entry)
        except Exception as e:  # psycopg2 / OSError など
            raise AuditPersistenceFailure(f"failed to persist activity log for {entry.file_name}: {e}") from e

    def record_run(self, entry: ActivityLogEntry) -> ActivityLogEntry | None:
        """Persist one run. Returns the stored entry, or None if the store failed."""
        try:
            stored = self.persist(entry)
        except AuditPersistenceFailure as e:
            logger.error("%s", e)
            return None
        logger.info(
            "activity log saved id=%s status=%s emails=%d",
            stored.id,
            stored.overall_status.value,
            len(stored.emails_sent),
        )
        return stored

    def cleanup_old_logs(self, now: datetime | None = None) -> CleanupReport:
        """Purge entries older than the retention horizon (best effort)."""
        report = CleanupReport()
        cutoff = (now or utc_now()) - self.retention
        try:
            expired = self.store.purge_older_than(cutoff)
        except Exception as e:
            logger.error("activity log cleanup failed: %s", e)
            return report
        report.deleted_entries = len(expired)
        for entry in expired:
            if not entry.file_path:
                continue
            path = Path(entry.file_path)
            try:
                path.unlink(missing_ok=True)
                report.deleted_files += 1
            except OSError as e:
                report.file_errors += 1
                logger.warning("could not delete retained file %s: %s", path, e)
        if report.deleted_entries:
            logger.info("cleanup removed %d activity logs older than %s", report.deleted_entries, cutoff.isoformat())
        return report

    def list_logs(self, page: int = 1, limit: int = 20) -> tuple[list[ActivityLogEntry], int]:
        return self.store.list_page(page=page, limit=limit)

    def get(self, entry_id: str) -> ActivityLogEntry | None:
        return self.store.get(entry_id)

    def download(self, entry_id: str) -> Attachment | None:
        """Original upload if still on disk, else a regenerated summary workbook."""
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        if entry.file_path:
            path = Path(entry.file_path)
            if path.is_file():
                return Attachment(entry.file_name, path.read_bytes(), "application/octet-stream")
        return build_summary_attachment(entry)
