from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date

from ..models.attendance_record import AttendanceRecord

"""Date filtering over normalized attendance records.

A record matches a target date when its parsed In Time falls on that date.
With ``include_status_only`` a record whose In Time is empty or unparsed also
matches when its status says leave/absent ("status-only" rows). Current-day
reports use ``include_status_only=True``; the Dean's previous-day report uses
``False``.
"""

__all__ = [
    "is_leave_or_absent",
    "filter_by_date",
    "filter_leave_absent",
]

logger = logging.getLogger(__name__)


def is_leave_or_absent(status: str | None) -> bool:
    s = (status or "").strip().lower()
    return "leave" in s or s == "l" or s == "a" or "absent" in s


def _matches(record: AttendanceRecord, target: date, include_status_only: bool) -> bool:
    if record.has_parsed_in_time:
        return record.in_time.date() == target  # type: ignore[union-attr]
    return include_status_only and is_leave_or_absent(record.status)


def filter_by_date(
    records: Iterable[AttendanceRecord],
    target: date,
    include_status_only: bool = False,
) -> list[AttendanceRecord]:
    records = list(records)
    results = [r for r in records if _matches(r, target, include_status_only)]
    logger.debug(
        "filter date=%s include_status_only=%s matched=%d/%d",
        target.isoformat(),
        include_status_only,
        len(results),
        len(records),
    )
    return results


def filter_leave_absent(records: Iterable[AttendanceRecord]) -> list[AttendanceRecord]:
    """Leave/absent rows regardless of date."""
    return [r for r in records if is_leave_or_absent(r.status)]
