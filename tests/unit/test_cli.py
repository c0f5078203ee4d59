from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from attendance_dispatch.cli.__main__ import (
    _build_backends,
    _load_env_file,
    _open_db,
    _resolve_dsn,
    _resolve_mail_config,
    main,
)
from attendance_dispatch.config.loader import load_config
from attendance_dispatch.db.activity_log_repository import PostgresActivityLogRepository
from attendance_dispatch.db.recipient_store import PostgresRecipientConfigStore, StaticRecipientConfigStore
from attendance_dispatch.logging.activity_log import JsonlActivityLogStore
from attendance_dispatch.models.config_models import DatabaseConfig, DispatchConfig, MailConfig


def test_config_error_exit_code(temp_workdir, capsys):
    assert main(["--config", "config/missing.yml", "cleanup"]) == 1
    assert "ERROR config: config file not found" in capsys.readouterr().out


def test_inspect_prints_headers(write_config, make_row, csv_bytes, write_upload, capsys):
    path = write_upload("att.csv", csv_bytes([make_row(1, "Asha"), make_row(2, "Bala")], delimiter=";"))
    assert main(["inspect", str(path)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("FILE: att.csv header_row=0 rows=2")
    assert "'User Name': 'Asha'" in out
    assert "'In Time': '15-03-2024 09:15'" in out


def test_inspect_unreadable_file(write_config, write_upload, capsys):
    path = write_upload("empty.xlsx", b"")
    assert main(["inspect", str(path)]) == 1
    assert "inspect: File is empty" in capsys.readouterr().out


def test_send_missing_file(write_config, capsys):
    assert main(["send", "data/nope.xlsx", "--uploaded-by", "admin"]) == 1
    assert "ERROR file not found" in capsys.readouterr().out


def test_send_without_smtp_host(write_config, temp_workdir, make_row, xlsx_bytes, write_upload, capsys):
    cfg = temp_workdir / "config" / "dispatch.yml"
    cfg.write_text(cfg.read_text(encoding="utf-8").replace("  host: smtp.test.local\n", ""), encoding="utf-8")
    path = write_upload("att.xlsx", xlsx_bytes([make_row(1, "Asha")]))
    assert main(["send", str(path), "--uploaded-by", "admin"]) == 1
    assert "ERROR setup: SMTP host is not configured" in capsys.readouterr().out


def test_invalid_static_recipients(temp_workdir, capsys):
    (temp_workdir / "config" / "dispatch.yml").write_text(
        "recipients:\n  - role: HOD\n    emails: [a@x.org]\n", encoding="utf-8"
    )
    assert main(["cleanup"]) == 1
    assert "ERROR backends: HOD configuration requires a department" in capsys.readouterr().out


def test_cleanup_and_empty_logs(write_config, capsys):
    assert main(["cleanup"]) == 0
    assert "cleanup deleted_entries=0 deleted_files=0 file_errors=0" in capsys.readouterr().out
    assert main(["logs", "list"]) == 0
    assert capsys.readouterr().out.strip() == "page=1 limit=20 total=0"
    assert main(["logs", "show", "abc"]) == 1
    assert "activity log not found: abc" in capsys.readouterr().out
    assert main(["logs", "download", "abc", "--out", "x.xlsx"]) == 1


def test_debug_flag(write_config, capsys):
    assert main(["--debug", "cleanup"]) == 0
    out = capsys.readouterr().out
    assert "DEBUG debug mode enabled" in out
    assert "DEBUG mode=static audit=JsonlActivityLogStore" in out


def test_env_file_overrides_smtp(temp_workdir, monkeypatch):
    (temp_workdir / ".env").write_text("SMTP_HOST=relay.env.local\nSMTP_PORT=2525\nSMTP_SECURE=true\n",
                                       encoding="utf-8")
    # 既存値として登録し、終了時に monkeypatch が元の状態へ戻す
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_SECURE"):
        monkeypatch.setenv(name, "placeholder")
    _load_env_file(Path(".env"))
    mail = _resolve_mail_config(MailConfig(host="smtp.yaml.local", from_email="a@x.org"))
    assert (mail.host, mail.port, mail.secure) == ("relay.env.local", 2525, True)
    assert mail.from_address == "GEIMS Attendance <a@x.org>"


def test_resolve_dsn_precedence(monkeypatch):
    for name in ("DATABASE_URL", "PGDSN", "PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE"):
        monkeypatch.delenv(name, raising=False)
    cfg = DispatchConfig(database=DatabaseConfig(host="db.yaml", port=6543, database="attendance"))
    assert _resolve_dsn(cfg) == "host=db.yaml port=6543 user=postgres dbname=attendance"
    monkeypatch.setenv("PGHOST", "db.env")
    monkeypatch.setenv("PGPASSWORD", "pw")
    assert _resolve_dsn(cfg) == "host=db.env port=6543 user=postgres dbname=attendance password=pw"
    monkeypatch.setenv("DATABASE_URL", "postgresql://u@h/d")
    assert _resolve_dsn(cfg) == "postgresql://u@h/d"


def test_open_db_falls_back_on_connection_error(monkeypatch):
    monkeypatch.delenv("DISABLE_DB_CONNECT", raising=False)
    with patch("attendance_dispatch.cli.__main__.psycopg2.connect",
               side_effect=psycopg2.OperationalError("could not connect")):
        assert _open_db(DispatchConfig(), logging.getLogger("test")) is None


def test_open_db_sets_autocommit(monkeypatch):
    monkeypatch.delenv("DISABLE_DB_CONNECT", raising=False)
    conn = MagicMock()
    with patch("attendance_dispatch.cli.__main__.psycopg2.connect", return_value=conn):
        assert _open_db(DispatchConfig(), logging.getLogger("test")) is conn
    assert conn.autocommit is True


def test_build_backends(write_config):
    cfg = load_config(write_config)
    log = logging.getLogger("test")

    recipients, audit = _build_backends(cfg, None, log)
    assert isinstance(recipients, StaticRecipientConfigStore)
    assert isinstance(audit, JsonlActivityLogStore)

    cursor = MagicMock()
    recipients, audit = _build_backends(cfg, cursor, log)
    assert isinstance(recipients, PostgresRecipientConfigStore)
    assert isinstance(audit, JsonlActivityLogStore)
    assert cursor.execute.call_count == 2  # email_configs / activity_logs

    pg_cfg = replace(cfg, audit=replace(cfg.audit, store="postgres"))
    _, audit = _build_backends(pg_cfg, MagicMock(), log)
    assert isinstance(audit, PostgresActivityLogRepository)


@pytest.mark.parametrize("argv", [[], ["send"], ["logs"], ["send", "f.xlsx"]])
def test_argument_errors(argv):
    with pytest.raises(SystemExit) as exc:
        main(argv)
    assert exc.value.code == 2
