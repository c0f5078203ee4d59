from __future__ import annotations

import csv
import io
import re
import zipfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils import get_column_letter

from ..models.attendance_record import REPORT_COLUMNS, AttendanceRecord
from ..models.config_models import CsvOptions
from .reader import clean_formula_artifacts, infer_format

"""Report rendering (CSV / XLSX attachments).

Both formats use the fixed REPORT_COLUMNS order and are byte-reproducible:
identical records and options always give identical bytes. For XLSX this means
pinning the zip member timestamps and the document core properties, which
openpyxl otherwise stamps with the current time.
"""

__all__ = [
    "Attachment",
    "COLUMN_WIDTHS",
    "TIMESTAMP_FORMAT",
    "format_timestamp",
    "sanitize_cell",
    "record_rows",
    "render_csv",
    "render_xlsx",
    "render_table_xlsx",
    "render_report",
    "resolve_format",
    "safe_sheet_title",
]

TIMESTAMP_FORMAT = "%d-%m-%Y %H:%M"
COLUMN_WIDTHS: tuple[int, ...] = (8, 15, 25, 25, 35, 25, 18, 18, 10)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_CONTENT_TYPE = "text/csv"

_FIXED_ZIP_TIME = (1980, 1, 1, 0, 0, 0)
_FIXED_DOC_TIME = b"2000-01-01T00:00:00Z"
_DOC_TIME = re.compile(rb"(<dcterms:(created|modified)[^>]*>)[^<]*(</dcterms:\2>)")
_CRLF = re.compile(r"[\r\n]+")
_SHEET_TITLE_INVALID = re.compile(r"[\[\]:*?/\\]")


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: str


def format_timestamp(value: object) -> str:
    """``DD-MM-YYYY HH:mm`` for parsed timestamps, empty otherwise."""
    return value.strftime(TIMESTAMP_FORMAT) if isinstance(value, datetime) else ""


def sanitize_cell(value: object) -> str:
    if value is None:
        return ""
    text = str(value).replace("\x00", "")
    text = _CRLF.sub(" ", text)
    return clean_formula_artifacts(text.strip())


def record_rows(records: Iterable[AttendanceRecord]) -> list[list[str]]:
    rows: list[list[str]] = []
    for record in records:
        row: list[str] = []
        for column in REPORT_COLUMNS:
            value = record.value_for(column)
            if column in ("In Time", "Out Time"):
                row.append(format_timestamp(value))
            else:
                row.append(sanitize_cell(value))
        rows.append(row)
    return rows


def render_csv(records: Iterable[AttendanceRecord], options: CsvOptions | None = None) -> bytes:
    options = options or CsvOptions()
    buf = io.StringIO()
    if options.bom:
        buf.write("\ufeff")
    if options.sep_hint:
        buf.write(f"sep={options.delimiter}\r\n")
    writer = csv.writer(
        buf, delimiter=options.delimiter, quoting=csv.QUOTE_ALL, lineterminator="\r\n"
    )
    writer.writerow(REPORT_COLUMNS)
    writer.writerows(record_rows(records))
    return buf.getvalue().encode("utf-8")


def safe_sheet_title(name: str) -> str:
    title = _SHEET_TITLE_INVALID.sub(" ", name).strip()
    return (title or "Attendance")[:31]


def _make_reproducible(data: bytes) -> bytes:
    """Rewrite the xlsx zip with fixed member times and core properties."""
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(data)) as src, zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as dst:
        for info in src.infolist():
            content = src.read(info.filename)
            if info.filename == "docProps/core.xml":
                content = _DOC_TIME.sub(rb"\g<1>" + _FIXED_DOC_TIME + rb"\g<3>", content)
            member = zipfile.ZipInfo(info.filename, date_time=_FIXED_ZIP_TIME)
            member.compress_type = zipfile.ZIP_DEFLATED
            member.external_attr = info.external_attr
            dst.writestr(member, content)
    return out.getvalue()


def render_table_xlsx(
    headers: Sequence[str],
    rows: Iterable[Sequence[object]],
    sheet_name: str,
    widths: Sequence[int] | None = None,
) -> bytes:
    """Single-sheet workbook with every cell stored as a string."""
    wb = Workbook()
    ws = wb.active
    ws.title = safe_sheet_title(sheet_name)
    for r, values in enumerate([list(headers), *rows], start=1):
        for c, value in enumerate(values, start=1):
            cell = ws.cell(row=r, column=c)
            cell.value = ILLEGAL_CHARACTERS_RE.sub("", "" if value is None else str(value))
            # "=" 始まりでも数式として解釈させない
            cell.data_type = "s"
    for idx, width in enumerate(widths or (), start=1):
        ws.column_dimensions[get_column_letter(idx)].width = width

    buf = io.BytesIO()
    wb.save(buf)
    return _make_reproducible(buf.getvalue())


def render_xlsx(records: Iterable[AttendanceRecord], sheet_name: str = "Attendance") -> bytes:
    return render_table_xlsx(REPORT_COLUMNS, record_rows(records), sheet_name, COLUMN_WIDTHS)


def resolve_format(override: str | None, upload_name: str) -> str:
    """Explicit override wins, otherwise follow the uploaded file's extension."""
    if override:
        fmt = override.lower()
        if fmt not in ("csv", "xlsx"):
            raise ValueError(f"unsupported report format: {override}")
        return fmt
    return infer_format(upload_name)


def render_report(
    records: Sequence[AttendanceRecord],
    fmt: str,
    sheet_name: str,
    base_name: str,
    csv_options: CsvOptions | None = None,
) -> Attachment:
    """Render one recipient report as an attachment named ``<base_name>.<ext>``."""
    if fmt == "csv":
        return Attachment(f"{base_name}.csv", render_csv(records, csv_options), CSV_CONTENT_TYPE)
    if fmt == "xlsx":
        return Attachment(f"{base_name}.xlsx", render_xlsx(records, sheet_name), XLSX_CONTENT_TYPE)
    raise ValueError(f"unsupported report format: {fmt}")
