from __future__ import annotations

from datetime import datetime

import pytest

from attendance_dispatch.excel.writer import (
    format_timestamp,
    render_report,
    resolve_format,
    safe_sheet_title,
    sanitize_cell,
)


def test_format_timestamp():
    assert format_timestamp(datetime(2024, 3, 5, 7, 9)) == "05-03-2024 07:09"
    assert format_timestamp("Not Punched") == ""
    assert format_timestamp(None) == ""


def test_sanitize_cell():
    assert sanitize_cell("  a\r\n\r\nb\x00 ") == "a b"
    assert sanitize_cell('="""X1"""') == "X1"
    assert sanitize_cell(None) == ""


def test_resolve_format_override_wins():
    assert resolve_format("CSV", "upload.xlsx") == "csv"
    assert resolve_format(None, "upload.csv") == "csv"
    assert resolve_format(None, "upload.xlsx") == "xlsx"
    with pytest.raises(ValueError, match="unsupported report format"):
        resolve_format("pdf", "upload.xlsx")


def test_render_report_rejects_unknown_format():
    with pytest.raises(ValueError):
        render_report([], "ods", "Sheet", "base")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("Dean Report", "Dean Report"),
        ("ENT/Head:Neck", "ENT Head Neck"),
        ("", "Attendance"),
        ("x" * 40, "x" * 31),
    ],
)
def test_safe_sheet_title(name, expected):
    assert safe_sheet_title(name) == expected
