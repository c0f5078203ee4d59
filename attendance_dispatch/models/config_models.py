from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

"""Config dataclasses for the attendance report dispatcher.

These are the typed view of ``config/dispatch.yml`` produced by
``attendance_dispatch.config.loader.load_config``. Secrets (SMTP password,
database DSN) are normally resolved from the environment by the CLI; the
values here are the YAML fallbacks.
"""


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class CsvOptions:
    """CSV attachment layout."""
    delimiter: str = ","
    bom: bool = True
    sep_hint: bool = False  # 先頭行に "sep=<delim>" を出力 (Excel 互換)


@dataclass(frozen=True)
class ReportConfig:
    format: str | None = None  # csv | xlsx | None (アップロード拡張子から推定)
    csv: CsvOptions = field(default_factory=CsvOptions)


@dataclass(frozen=True)
class MailConfig:
    """SMTP transport settings (the transport is built once per process)."""
    host: str | None = None
    port: int = 587
    secure: bool = False  # True = implicit TLS (465), False = STARTTLS
    user: str | None = None
    password: str | None = None
    from_name: str = "GEIMS Attendance"
    from_email: str | None = None
    timeout_seconds: float = 10.0

    @property
    def from_address(self) -> str:
        email = self.from_email or self.user or ""
        return f"{self.from_name} <{email}>" if email else self.from_name


@dataclass(frozen=True)
class AuditConfig:
    store: str = "jsonl"  # jsonl | postgres
    log_path: Path = Path("logs/activity-log.jsonl")
    retention_hours: float = 48.0
    keep_uploaded_file: bool = True
    upload_dir: Path = Path("uploads")


@dataclass(frozen=True)
class DepartmentsConfig:
    synonyms_file: Path | None = None  # None = packaged department_synonyms.yml


@dataclass(frozen=True)
class DispatchConfig:
    """Root configuration object for a dispatch run."""
    timezone: str = "UTC"
    report: ReportConfig = field(default_factory=ReportConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    departments: DepartmentsConfig = field(default_factory=DepartmentsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    # 静的受信者設定 (DB 無効時に使用). 生 dict のまま保持し store 側で検証
    recipients: list[dict[str, Any]] = field(default_factory=list)
