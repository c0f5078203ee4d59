from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""ActivityLogEntry model for the dispatch audit trail.

One ActivityLogEntry is written per dispatch run (success or abort) and never
mutated afterwards. ``emails_sent`` holds one EmailSentEntry per delivered
recipient address, plus one failed entry per condition (or HOD department)
that raised.

Timestamps are serialized as ISO8601 UTC with a 'Z' suffix.
"""

__all__ = [
    "DeliveryStatus",
    "OverallStatus",
    "RecipientType",
    "EmailSentEntry",
    "ActivityLogEntry",
    "derive_overall_status",
    "utc_now",
]


class DeliveryStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class OverallStatus(Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class RecipientType(Enum):
    DEAN = "Dean"
    MS_DEPUTY_MS = "MS/Deputy MS"
    MANAGEMENT = "Management Team"
    HOD = "HOD"
    SYSTEM = "System"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str | datetime) -> datetime:
    if isinstance(value, datetime):  # psycopg2 は timestamptz を datetime で返す
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class EmailSentEntry:
    """Outcome of one delivery (or one failed condition) inside a run."""
    recipient: str
    recipient_type: RecipientType
    status: DeliveryStatus
    sent_at: datetime = field(default_factory=utc_now)
    department: str | None = None
    record_count: int | None = None
    error_message: str | None = None

    @staticmethod
    def success(
        recipient: str,
        recipient_type: RecipientType,
        record_count: int,
        department: str | None = None,
    ) -> EmailSentEntry:
        return EmailSentEntry(
            recipient=recipient,
            recipient_type=recipient_type,
            status=DeliveryStatus.SUCCESS,
            department=department,
            record_count=record_count,
        )

    @staticmethod
    def failure(
        recipient: str,
        recipient_type: RecipientType,
        error_message: str,
        department: str | None = None,
    ) -> EmailSentEntry:
        return EmailSentEntry(
            recipient=recipient,
            recipient_type=recipient_type,
            status=DeliveryStatus.FAILED,
            department=department,
            error_message=error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "recipient_type": self.recipient_type.value,
            "department": self.department,
            "record_count": self.record_count,
            "status": self.status.value,
            "error_message": self.error_message,
            "sent_at": _iso(self.sent_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EmailSentEntry:
        return EmailSentEntry(
            recipient=data["recipient"],
            recipient_type=RecipientType(data["recipient_type"]),
            status=DeliveryStatus(data["status"]),
            sent_at=_parse_iso(data["sent_at"]),
            department=data.get("department"),
            record_count=data.get("record_count"),
            error_message=data.get("error_message"),
        )


def derive_overall_status(entries: Iterable[EmailSentEntry]) -> OverallStatus:
    """completed: no failures (zero entries included); failed: failures only; else partial."""
    succeeded = failed = 0
    for e in entries:
        if e.status is DeliveryStatus.SUCCESS:
            succeeded += 1
        else:
            failed += 1
    if failed == 0:
        return OverallStatus.COMPLETED
    if succeeded == 0:
        return OverallStatus.FAILED
    return OverallStatus.PARTIAL


@dataclass(frozen=True)
class ActivityLogEntry:
    file_name: str
    total_records: int
    emails_sent: tuple[EmailSentEntry, ...]
    uploaded_by: str
    overall_status: OverallStatus
    upload_date: datetime = field(default_factory=utc_now)
    file_path: str | None = None
    id: str | None = None  # ストア側で採番

    @staticmethod
    def create(
        file_name: str,
        total_records: int,
        emails_sent: Iterable[EmailSentEntry],
        uploaded_by: str,
        file_path: str | None = None,
        overall_status: OverallStatus | None = None,
        upload_date: datetime | None = None,
    ) -> ActivityLogEntry:
        entries = tuple(emails_sent)
        return ActivityLogEntry(
            upload_date=upload_date or utc_now(),
            file_name=file_name,
            total_records=total_records,
            emails_sent=entries,
            uploaded_by=uploaded_by,
            overall_status=overall_status or derive_overall_status(entries),
            file_path=file_path,
        )

    def with_id(self, entry_id: str) -> ActivityLogEntry:
        return replace(self, id=entry_id)

    @property
    def success_count(self) -> int:
        return sum(1 for e in self.emails_sent if e.status is DeliveryStatus.SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for e in self.emails_sent if e.status is DeliveryStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["emails_sent"] = [e.to_dict() for e in self.emails_sent]
        data["overall_status"] = self.overall_status.value
        data["upload_date"] = _iso(self.upload_date)
        return data

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=data.get("id"),
            file_name=data["file_name"],
            file_path=data.get("file_path"),
            total_records=int(data["total_records"]),
            emails_sent=tuple(EmailSentEntry.from_dict(e) for e in data.get("emails_sent") or []),
            uploaded_by=str(data["uploaded_by"]),
            overall_status=OverallStatus(data["overall_status"]),
            upload_date=_parse_iso(data["upload_date"]),
        )
