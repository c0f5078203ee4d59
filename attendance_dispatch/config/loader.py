from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    AuditConfig,
    CsvOptions,
    DatabaseConfig,
    DepartmentsConfig,
    DispatchConfig,
    MailConfig,
    ReportConfig,
)

"""Config loader.

Responsibilities:
- Load YAML config (default ``config/dispatch.yml``)
- Validate against the packaged JSON schema (``config_schema.json``)
- Apply defaults (timezone=UTC, retention 48h, jsonl audit store, ...)
- Load the versioned department synonym table
"""

CONFIG_DIR = Path(__file__).parent
SCHEMA_PATH = CONFIG_DIR / "config_schema.json"
DEFAULT_SYNONYMS_PATH = CONFIG_DIR / "department_synonyms.yml"
DEFAULT_CONFIG_PATH = Path("config/dispatch.yml")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing/invalid, or the data fails validation
            (missing required keys, wrong types, unknown top-level keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _optional_path(value: Any) -> Path | None:
    return Path(value) if value else None


def load_config(path: Path) -> DispatchConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e

    _validate_config_schema(data)

    report_raw = data.get("report") or {}
    csv_raw = report_raw.get("csv") or {}
    mail_raw = data.get("mail") or {}
    audit_raw = data.get("audit") or {}
    dept_raw = data.get("departments") or {}
    db_raw = data.get("database") or {}

    report = ReportConfig(
        format=report_raw.get("format"),
        csv=CsvOptions(
            delimiter=csv_raw.get("delimiter", ","),
            bom=csv_raw.get("bom", True),
            sep_hint=csv_raw.get("sep_hint", False),
        ),
    )
    mail = MailConfig(
        host=mail_raw.get("host"),
        port=mail_raw.get("port", 587),
        secure=mail_raw.get("secure", False),
        user=mail_raw.get("user"),
        password=mail_raw.get("password"),
        from_name=mail_raw.get("from_name", "GEIMS Attendance"),
        from_email=mail_raw.get("from_email"),
        timeout_seconds=mail_raw.get("timeout_seconds", 10.0),
    )
    audit = AuditConfig(
        store=audit_raw.get("store", "jsonl"),
        log_path=Path(audit_raw.get("log_path", "logs/activity-log.jsonl")),
        retention_hours=audit_raw.get("retention_hours", 48.0),
        keep_uploaded_file=audit_raw.get("keep_uploaded_file", True),
        upload_dir=Path(audit_raw.get("upload_dir", "uploads")),
    )
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return DispatchConfig(
        timezone=data.get("timezone", "UTC"),
        report=report,
        mail=mail,
        audit=audit,
        departments=DepartmentsConfig(synonyms_file=_optional_path(dept_raw.get("synonyms_file"))),
        database=db,
        recipients=list(data.get("recipients") or []),
    )


def load_department_synonyms(path: Path | None = None) -> list[list[str]]:
    """Load department equivalence classes from versioned YAML.

    File format::

        version: 1
        equivalence_classes:
          - canonical: obstetrics gynecology
            members: [obstetrics gynaecology, obstetrics]

    Returns:
        One list per class, canonical name first, then its members (raw, not
        yet normalized).
    """
    path = path or DEFAULT_SYNONYMS_PATH
    if not path.exists():
        raise ConfigError(f"department synonyms file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml in {path.name}: {e}") from e

    if data.get("version") != 1:
        raise ConfigError(f"unsupported department synonyms version: {data.get('version')!r}")

    classes: list[list[str]] = []
    for entry in data.get("equivalence_classes") or []:
        if not isinstance(entry, dict) or not entry.get("canonical"):
            raise ConfigError(f"invalid equivalence class in {path.name}: {entry!r}")
        classes.append([str(entry["canonical"]), *[str(m) for m in entry.get("members") or []]])
    return classes
