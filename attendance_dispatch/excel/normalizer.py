from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

import numpy as np
import pandas as pd

from ..models.attendance_record import AttendanceRecord, Timestamp

"""Record normalization.

Timestamp cells arrive in several encodings depending on the exporting tool:

- Excel serial numbers (float days since 1899-12-30, fraction = time of day),
  sometimes as numeric text
- native spreadsheet datetimes (pandas Timestamp)
- free text in one of many day-first / month-first layouts

Text patterns are an ordered table: day-first layouts come before month-first
ones so "01/02/2024" is read as 1 February. The first pattern that matches the
whole string wins. Values nothing understands are kept as text ("unparsed")
and never match a date filter.
"""

__all__ = [
    "DatePattern",
    "DATE_PATTERNS",
    "EXCEL_EPOCH",
    "excel_serial_to_datetime",
    "parse_timestamp",
    "sanitize_text",
    "normalize_record",
    "normalize_records",
]

EXCEL_EPOCH = datetime(1899, 12, 30)
# 数値文字列をシリアル値とみなす範囲 (1902 年〜2173 年)
SERIAL_TEXT_MIN = 1000
SERIAL_TEXT_MAX = 100000

_CRLF = re.compile(r"[\r\n]+")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NUMERIC_TEXT = re.compile(r"^\d+(\.\d+)?$")


@dataclass(frozen=True)
class DatePattern:
    label: str  # human readable layout
    fmt: str  # strptime format
    day_first: bool


DATE_PATTERNS: tuple[DatePattern, ...] = (
    DatePattern("DD/MM/YYYY HH:mm:ss", "%d/%m/%Y %H:%M:%S", True),
    DatePattern("DD/MM/YYYY HH:mm", "%d/%m/%Y %H:%M", True),
    DatePattern("DD/MM/YYYY", "%d/%m/%Y", True),
    DatePattern("DD-MM-YYYY HH:mm:ss", "%d-%m-%Y %H:%M:%S", True),
    DatePattern("DD-MM-YYYY HH:mm", "%d-%m-%Y %H:%M", True),
    DatePattern("DD-MM-YYYY", "%d-%m-%Y", True),
    DatePattern("DD/MM/YY HH:mm:ss", "%d/%m/%y %H:%M:%S", True),
    DatePattern("DD/MM/YY HH:mm", "%d/%m/%y %H:%M", True),
    DatePattern("DD/MM/YY", "%d/%m/%y", True),
    DatePattern("DD-MM-YY HH:mm:ss", "%d-%m-%y %H:%M:%S", True),
    DatePattern("DD-MM-YY HH:mm", "%d-%m-%y %H:%M", True),
    DatePattern("DD-MM-YY", "%d-%m-%y", True),
    DatePattern("DD/MM/YYYY h:mm:ss A", "%d/%m/%Y %I:%M:%S %p", True),
    DatePattern("DD/MM/YYYY h:mm A", "%d/%m/%Y %I:%M %p", True),
    DatePattern("DD-MM-YYYY h:mm:ss A", "%d-%m-%Y %I:%M:%S %p", True),
    DatePattern("DD-MM-YYYY h:mm A", "%d-%m-%Y %I:%M %p", True),
    DatePattern("M/D/YYYY H:mm:ss", "%m/%d/%Y %H:%M:%S", False),
    DatePattern("M/D/YYYY H:mm", "%m/%d/%Y %H:%M", False),
    DatePattern("M/D/YYYY", "%m/%d/%Y", False),
    DatePattern("M/D/YY H:mm:ss", "%m/%d/%y %H:%M:%S", False),
    DatePattern("M/D/YY H:mm", "%m/%d/%y %H:%M", False),
    DatePattern("M/D/YY", "%m/%d/%y", False),
    DatePattern("M/D/YYYY h:mm:ss A", "%m/%d/%Y %I:%M:%S %p", False),
    DatePattern("M/D/YYYY h:mm A", "%m/%d/%Y %I:%M %p", False),
    DatePattern("M/D/YY h:mm A", "%m/%d/%y %I:%M %p", False),
    # ISO (曖昧性なし, pandas の CSV 出力など)
    DatePattern("YYYY-MM-DD HH:mm:ss", "%Y-%m-%d %H:%M:%S", False),
    DatePattern("YYYY-MM-DD HH:mm", "%Y-%m-%d %H:%M", False),
    DatePattern("YYYY-MM-DDTHH:mm:ss", "%Y-%m-%dT%H:%M:%S", False),
    DatePattern("YYYY-MM-DD", "%Y-%m-%d", False),
)


def excel_serial_to_datetime(serial: float) -> datetime:
    """Convert an Excel serial day count to a naive datetime (second precision)."""
    return EXCEL_EPOCH + timedelta(seconds=round(float(serial) * 86400))


def _match_patterns(text: str, patterns: Iterable[DatePattern] = DATE_PATTERNS) -> datetime | None:
    for pattern in patterns:
        try:
            return datetime.strptime(text, pattern.fmt)
        except ValueError:
            continue
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, (bool, np.bool_))


def parse_timestamp(value: Any) -> Timestamp:
    """Canonicalize one In/Out Time cell.

    Returns:
        datetime when understood, the cleaned raw text when not, None when empty.
    """
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime().replace(tzinfo=None)
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time())
    if _is_number(value):
        if pd.isna(value):
            return None
        try:
            return excel_serial_to_datetime(float(value))
        except (OverflowError, ValueError):
            # datetime の表現範囲外のシリアル値は生値のまま残す
            return sanitize_text(value)

    text = sanitize_text(value)
    if not text:
        return None
    if _NUMERIC_TEXT.match(text):
        number = float(text)
        if SERIAL_TEXT_MIN < number < SERIAL_TEXT_MAX:
            return excel_serial_to_datetime(number)
    parsed = _match_patterns(text)
    return parsed if parsed is not None else text


def sanitize_text(value: Any) -> str:
    """Make a text cell safe for CSV emission.

    CR/LF runs become one space, other control characters and double quotes are
    dropped, surrounding whitespace is trimmed.
    """
    if value is None:
        return ""
    text = _CRLF.sub(" ", str(value))
    text = _CONTROL.sub("", text)
    return text.replace('"', "").replace("\t", " ").strip()


def normalize_record(row: dict[str, Any]) -> AttendanceRecord:
    return AttendanceRecord(
        serial_no=sanitize_text(row.get("S.No")),
        attendance_id=sanitize_text(row.get("Attendance id")),
        user_name=sanitize_text(row.get("User Name")),
        designation=sanitize_text(row.get("Users Designation")),
        office_location=sanitize_text(row.get("Office Locations")),
        division=sanitize_text(row.get("Division/Units")),
        in_time=parse_timestamp(row.get("In Time")),
        out_time=parse_timestamp(row.get("Out Time")),
        status=sanitize_text(row.get("Status")),
    )


def normalize_records(rows: Iterable[dict[str, Any]]) -> list[AttendanceRecord]:
    return [normalize_record(r) for r in rows]
