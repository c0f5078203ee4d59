from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

"""AttendanceRecord model.

One AttendanceRecord is built per non-blank spreadsheet row after ingestion
and normalization. Timestamp fields hold a ``datetime`` when the source value
was understood, the raw text when it was not, and ``None`` when the cell was
empty.
"""

__all__ = [
    "AttendanceRecord",
    "Timestamp",
    "REQUIRED_COLUMNS",
    "OPTIONAL_COLUMNS",
    "REPORT_COLUMNS",
    "COLUMN_FIELDS",
]

Timestamp = datetime | str | None

REQUIRED_COLUMNS: tuple[str, ...] = (
    "S.No",
    "Attendance id",
    "User Name",
    "Users Designation",
    "Office Locations",
    "Division/Units",
    "Status",
)
OPTIONAL_COLUMNS: tuple[str, ...] = ("In Time", "Out Time")

# 出力列順 (固定)
REPORT_COLUMNS: tuple[str, ...] = (
    "S.No",
    "Attendance id",
    "User Name",
    "Users Designation",
    "Office Locations",
    "Division/Units",
    "In Time",
    "Out Time",
    "Status",
)

COLUMN_FIELDS: dict[str, str] = {
    "S.No": "serial_no",
    "Attendance id": "attendance_id",
    "User Name": "user_name",
    "Users Designation": "designation",
    "Office Locations": "office_location",
    "Division/Units": "division",
    "In Time": "in_time",
    "Out Time": "out_time",
    "Status": "status",
}


@dataclass(frozen=True)
class AttendanceRecord:
    """Normalized attendance row."""
    serial_no: str
    attendance_id: str
    user_name: str
    designation: str
    office_location: str
    division: str
    in_time: Timestamp
    out_time: Timestamp
    status: str

    @property
    def has_parsed_in_time(self) -> bool:
        return isinstance(self.in_time, datetime)

    def value_for(self, column: str) -> object:
        """Return the field value behind a canonical column header."""
        return getattr(self, COLUMN_FIELDS[column])
