# Shared pytest fixtures
from __future__ import annotations

import io
import tempfile
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from attendance_dispatch.logging.init import reset_logging
from attendance_dispatch.services.mailer import MailMessage, SendFailure

HEADERS = [
    "S.No",
    "Attendance id",
    "User Name",
    "Users Designation",
    "Office Locations",
    "Division/Units",
    "In Time",
    "Out Time",
    "Status",
]

# 固定時刻: 2024-03-15 (金) 10:00 UTC
NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)
TODAY = "15/03/2024"
YESTERDAY = "14/03/2024"


class FakeTransport:
    """In-memory mail transport; fails sends whose subject contains a marker."""

    def __init__(self) -> None:
        self.sent: list[MailMessage] = []
        self.fail_subjects: list[str] = []

    def send_mail(self, message: MailMessage) -> str:
        for marker in self.fail_subjects:
            if marker in message.subject:
                raise SendFailure(f"SMTP send failed: connection refused ({marker})")
        self.sent.append(message)
        return f"<{len(self.sent)}@test.local>"

    def subjects(self) -> list[str]:
        return [m.subject for m in self.sent]


@pytest.fixture(autouse=True)
def _clean_logging() -> Iterator[None]:
    # capsys の stdout 差し替えに追従させるため毎テスト再構成
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Iterator[Path]:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
        for name in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS", "SMTP_FROM_EMAIL", "DATABASE_URL", "PGDSN"):
            monkeypatch.delenv(name, raising=False)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """timezone: UTC
report:
  format: null
  csv:
    delimiter: ","
    bom: true
    sep_hint: false
mail:
  host: smtp.test.local
  port: 587
  from_name: GEIMS Attendance
  from_email: attendance@test.local
audit:
  store: jsonl
  log_path: logs/activity-log.jsonl
  retention_hours: 48
  keep_uploaded_file: true
  upload_dir: uploads
recipients:
  - role: Dean
    emails: [dean@test.local]
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "dispatch.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def make_row() -> Callable[..., list[Any]]:
    def _make(
        sno: int,
        name: str,
        *,
        designation: str = "Assistant Professor",
        division: str = "General Medicine",
        in_time: Any = f"{TODAY} 09:15",
        out_time: Any = "",
        status: str = "Present",
        attendance_id: str | None = None,
        location: str = "Main Block",
    ) -> list[Any]:
        return [
            sno,
            attendance_id or f"EMP{sno:04d}",
            name,
            designation,
            location,
            division,
            in_time,
            out_time,
            status,
        ]

    return _make


@pytest.fixture()
def xlsx_bytes() -> Callable[..., bytes]:
    """Build a real workbook (first sheet) from header + rows."""

    def _build(rows: list[list[Any]], headers: list[str] | None = None,
               preamble: list[list[Any]] | None = None) -> bytes:
        table = [*(preamble or []), headers or HEADERS, *rows]
        buf = io.BytesIO()
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            pd.DataFrame(table).to_excel(writer, sheet_name="Attendance", header=False, index=False)
        return buf.getvalue()

    return _build


@pytest.fixture()
def csv_bytes() -> Callable[..., bytes]:
    def _build(rows: list[list[Any]], headers: list[str] | None = None, delimiter: str = ",") -> bytes:
        buf = io.StringIO()
        pd.DataFrame(rows, columns=headers or HEADERS).to_csv(buf, sep=delimiter, index=False)
        return buf.getvalue().encode("utf-8")

    return _build


@pytest.fixture()
def write_upload(temp_workdir: Path) -> Callable[[str, bytes], Path]:
    def _write(name: str, data: bytes) -> Path:
        path = temp_workdir / "data" / name
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture()
def now() -> datetime:
    return NOW
