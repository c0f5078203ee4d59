from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

import pandas as pd

from ..models.attendance_record import OPTIONAL_COLUMNS, REQUIRED_COLUMNS

"""Attendance file ingestion.

Parses an uploaded CSV/XLSX byte stream into raw rows keyed by the canonical
column names. Pure transform: nothing is written to disk here.

- Header names are matched case-insensitively after whitespace normalization.
- The header row is normally the first row; exports that prepend title or
  date rows are handled by scanning the first rows for the real header.
- Fully blank rows are dropped, every other row is kept.
- Identifier-like columns are cleaned of spreadsheet formula artifacts.
"""

__all__ = [
    "IngestionError",
    "FileFormatError",
    "ParseError",
    "SheetData",
    "infer_format",
    "read_attendance_file",
    "extract_rows",
    "ingest",
    "clean_formula_artifacts",
    "normalize_header",
]

# ヘッダ探索範囲 (タイトル行・日付行が先頭に付くエクスポート対策)
HEADER_SCAN_ROWS = 10
IDENTIFIER_COLUMNS: tuple[str, ...] = ("S.No", "Attendance id")
CSV_DELIMITER_CANDIDATES = (",", ";", "\t", "|")

_DATE_LIKE = re.compile(r"^\d+/\d+/\d+")
# Formula artifact grammar, applied in order:
#   1. leading "=" followed by one or more quotes   ="""0996  -> 0996
#   2. trailing quotes                              0996"""   -> 0996
#   3. any remaining embedded quote
_LEADING_FORMULA = re.compile(r'^="+')
_TRAILING_QUOTES = re.compile(r'"+$')


class IngestionError(Exception):
    """Base class for errors that abort a run before any condition executes."""


class FileFormatError(IngestionError):
    """Empty input or missing required columns."""

    def __init__(self, message: str, missing_columns: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_columns = missing_columns or []


class ParseError(IngestionError):
    """Bytes could not be read as CSV/XLSX."""


@dataclass
class SheetData:
    columns: list[str]  # 正規化済みヘッダ (元の表記)
    rows: list[dict[str, Any]]  # canonical 列名 → 生値
    header_row: int = 0


def normalize_header(value: Any) -> str:
    return " ".join(str(value).split()).lower()


def clean_formula_artifacts(value: str) -> str:
    '''Strip spreadsheet formula noise such as ``="""09960335``.'''
    value = _LEADING_FORMULA.sub("", value)
    value = _TRAILING_QUOTES.sub("", value)
    return value.replace('"', "").strip()


def infer_format(file_name: str) -> str:
    """csv for ``.csv`` uploads, xlsx for everything else."""
    return "csv" if PurePath(file_name).suffix.lower() == ".csv" else "xlsx"


def _detect_delimiter(lines: list[str]) -> str:
    # タイトル行には区切り文字が無いため先頭数行で最多のものを採用
    sample = lines[:HEADER_SCAN_ROWS]
    counts = {d: max((line.count(d) for line in sample), default=0) for d in CSV_DELIMITER_CANDIDATES}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def _read_csv(data: bytes) -> pd.DataFrame:
    text = data.decode("utf-8-sig")
    lines = text.splitlines()
    # 自前出力の "sep=;" ヒント行を受け入れる
    if lines and lines[0].lower().startswith("sep=") and len(lines[0]) <= 5:
        delimiter = lines[0][4:] or ","
        text = "\n".join(lines[1:])
    else:
        delimiter = _detect_delimiter(lines)
    # 列数は最長行に合わせる (短いタイトル行で表幅が決まらないように)
    width = max((len(fields) for fields in csv.reader(io.StringIO(text), delimiter=delimiter)), default=0)
    if width == 0:
        raise FileFormatError("File is empty")
    return pd.read_csv(
        io.StringIO(text),
        sep=delimiter,
        header=None,
        names=range(width),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    )


def read_attendance_file(data: bytes, fmt: str) -> pd.DataFrame:
    """Read raw bytes into a header-less DataFrame (first sheet for xlsx).

    Raises:
        FileFormatError: the input is empty
        ParseError: the bytes are not a readable CSV/XLSX
    """
    if not data or not data.strip():
        raise FileFormatError("File is empty")
    try:
        if fmt == "csv":
            df = _read_csv(data)
        elif fmt == "xlsx":
            df = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=object)
        else:
            raise ParseError(f"unsupported file format: {fmt}")
    except pd.errors.EmptyDataError as e:
        raise FileFormatError("File is empty") from e
    except IngestionError:
        raise
    except Exception as e:  # pandas / openpyxl / codec errors
        raise ParseError(f"File processing error: {e}") from e
    return df


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _locate_header(df: pd.DataFrame) -> int:
    """Index of the first row that carries every required header.

    Falls back to row 0 so that validation reports what is missing.
    """
    required = {normalize_header(c) for c in REQUIRED_COLUMNS}
    for idx in range(min(HEADER_SCAN_ROWS, df.shape[0])):
        cells = {normalize_header(v) for v in df.iloc[idx].tolist() if not _is_blank(v)}
        if required <= cells:
            return idx
    return 0


def _validate_columns(columns: list[str]) -> None:
    present = {normalize_header(c) for c in columns}
    missing = [c for c in REQUIRED_COLUMNS if normalize_header(c) not in present]
    if missing:
        raise FileFormatError(
            f"Missing required columns: {', '.join(missing)}", missing_columns=missing
        )


def _text_value(value: Any) -> str:
    if _is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def extract_rows(df: pd.DataFrame) -> SheetData:
    """Apply the header row and build canonical row dicts.

    Steps:
    1. Locate the header row (row 0, or the first row holding all headers
       when the export starts with title/date rows)
    2. Validate required columns
    3. Map each non-blank data row to canonical column names
    4. Clean formula artifacts in identifier columns
    """
    if df.shape[0] == 0:
        raise FileFormatError("File is empty")

    first_row = [_text_value(v) for v in df.iloc[0].tolist()]
    header_idx = 0
    if any(_DATE_LIKE.match(c) for c in first_row) or not _has_required(first_row):
        header_idx = _locate_header(df)

    columns = [_text_value(v).strip() for v in df.iloc[header_idx].tolist()]
    _validate_columns(columns)

    canonical_by_header = {normalize_header(c): c for c in (*REQUIRED_COLUMNS, *OPTIONAL_COLUMNS)}
    positions: dict[str, int] = {}
    for pos, header in enumerate(columns):
        canonical = canonical_by_header.get(normalize_header(header))
        if canonical is not None and canonical not in positions:
            positions[canonical] = pos

    rows: list[dict[str, Any]] = []
    for _, raw in df.iloc[header_idx + 1:].iterrows():
        values = raw.tolist()
        if all(_is_blank(v) for v in values):
            continue
        row: dict[str, Any] = {}
        for canonical in (*REQUIRED_COLUMNS, *OPTIONAL_COLUMNS):
            pos = positions.get(canonical)
            val = values[pos] if pos is not None and pos < len(values) else None
            if canonical in OPTIONAL_COLUMNS:
                # 時刻列は正規化段階で解釈するため生値を保持 (空は "")
                row[canonical] = "" if _is_blank(val) else val
            else:
                row[canonical] = _text_value(val)
        for col in IDENTIFIER_COLUMNS:
            row[col] = clean_formula_artifacts(row[col])
        rows.append(row)

    if not rows:
        raise FileFormatError("File is empty")
    return SheetData(columns=columns, rows=rows, header_row=header_idx)


def _has_required(cells: list[str]) -> bool:
    present = {normalize_header(c) for c in cells}
    return all(normalize_header(c) in present for c in REQUIRED_COLUMNS)


def ingest(data: bytes, fmt: str) -> SheetData:
    """Read and validate an uploaded attendance file."""
    return extract_rows(read_attendance_file(data, fmt))
