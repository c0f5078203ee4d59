from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from attendance_dispatch.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from attendance_dispatch.db.activity_log_repository import PostgresActivityLogRepository, ensure_schema
from attendance_dispatch.db.recipient_store import (
    PostgresRecipientConfigStore,
    RecipientConfigStore,
    StaticRecipientConfigStore,
)
from attendance_dispatch.excel.normalizer import normalize_records
from attendance_dispatch.excel.reader import IngestionError, infer_format, ingest
from attendance_dispatch.excel.writer import format_timestamp
from attendance_dispatch.logging.activity_log import JsonlActivityLogStore
from attendance_dispatch.logging.init import log_summary, set_debug, setup_logging
from attendance_dispatch.models.config_models import DispatchConfig, MailConfig
from attendance_dispatch.models.dispatch_result import WorkflowStatus
from attendance_dispatch.models.recipient_config import InvalidRecipientConfig
from attendance_dispatch.services.auditor import ActivityAuditor, ActivityLogStore, clean_upload_name, store_upload
from attendance_dispatch.services.departments import DepartmentMatcher
from attendance_dispatch.services.mailer import SmtpMailTransport
from attendance_dispatch.services.orchestrator import ProcessingError, dispatch_reports
from attendance_dispatch.services.summary import render_summary_line

"""CLI entrypoint.

Commands:
- send FILE --uploaded-by ID   run the dispatch workflow for one upload
- inspect FILE                 print detected headers and the first records
- cleanup                      manual retention sweep of the activity log
- logs list|show|download      audit retrieval

Exit codes: 0 all conditions completed, 2 partial success, 1 fatal error.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True により .env の値で既存環境変数を上書きし、SMTP / DB 接続情報を最優先化。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _resolve_dsn(cfg: DispatchConfig) -> str:
    """Connection string resolution.

    1. DATABASE_URL / PGDSN (``.env`` loaded first with override)
    2. individual PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
    3. ``database`` section of dispatch.yml for anything still missing
    """
    db_cfg = cfg.database
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


def _resolve_mail_config(mail: MailConfig) -> MailConfig:
    """SMTP_* environment variables win over the yaml ``mail`` section."""
    env: dict[str, Any] = {}
    if os.getenv("SMTP_HOST"):
        env["host"] = os.getenv("SMTP_HOST")
    if os.getenv("SMTP_PORT"):
        env["port"] = int(os.environ["SMTP_PORT"])
    if os.getenv("SMTP_SECURE"):
        env["secure"] = os.environ["SMTP_SECURE"].strip().lower() in ("1", "true", "yes")
    if os.getenv("SMTP_USER"):
        env["user"] = os.getenv("SMTP_USER")
    if os.getenv("SMTP_PASS"):
        env["password"] = os.getenv("SMTP_PASS")
    if os.getenv("SMTP_FROM_EMAIL"):
        env["from_email"] = os.getenv("SMTP_FROM_EMAIL")
    if os.getenv("SMTP_FROM_NAME"):
        env["from_name"] = os.getenv("SMTP_FROM_NAME")
    return replace(mail, **env) if env else mail


def _open_db(cfg: DispatchConfig, logger: Any) -> Any:
    """psycopg2 connection in autocommit mode, or None (static / JSONL mode)."""
    # テスト等で完全に無効化したい場合 DISABLE_DB_CONNECT=1
    if os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> static recipients / jsonl audit")
        return None
    try:
        conn = psycopg2.connect(_resolve_dsn(cfg))
    except psycopg2.Error as e:
        logger.info(f"DB connection failed -> static recipients / jsonl audit: {e}")
        return None
    conn.autocommit = True
    return conn


def _build_backends(
    cfg: DispatchConfig, cursor: Any, logger: Any
) -> tuple[RecipientConfigStore, ActivityLogStore]:
    if cursor is None:
        if cfg.audit.store == "postgres":
            logger.warning("audit.store=postgres but no database connection -> jsonl")
        return StaticRecipientConfigStore.from_config(cfg.recipients), JsonlActivityLogStore(cfg.audit.log_path)
    ensure_schema(cursor)
    audit_store: ActivityLogStore
    if cfg.audit.store == "postgres":
        audit_store = PostgresActivityLogRepository(cursor)
    else:
        audit_store = JsonlActivityLogStore(cfg.audit.log_path)
    return PostgresRecipientConfigStore(cursor), audit_store


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="attendance-dispatch", description="Attendance report distribution")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to dispatch.yml")
    sub = p.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="Dispatch reports for an uploaded attendance file")
    send.add_argument("file", type=Path)
    send.add_argument("--uploaded-by", required=True, help="Uploader identity for the audit record")
    send.add_argument("--format", choices=("csv", "xlsx"), default=None, help="Attachment format override")
    send.add_argument("--no-keep-file", action="store_true", help="Do not retain the uploaded file")

    inspect = sub.add_parser("inspect", help="Print detected headers and first records then exit")
    inspect.add_argument("file", type=Path)

    sub.add_parser("cleanup", help="Delete activity logs older than the retention horizon")

    logs = sub.add_parser("logs", help="Activity log retrieval")
    logs_sub = logs.add_subparsers(dest="logs_command", required=True)
    lst = logs_sub.add_parser("list")
    lst.add_argument("--page", type=int, default=1)
    lst.add_argument("--limit", type=int, default=20)
    show = logs_sub.add_parser("show")
    show.add_argument("id")
    download = logs_sub.add_parser("download")
    download.add_argument("id")
    download.add_argument("--out", type=Path, required=True)
    return p.parse_args(argv)


def _inspect(path: Path) -> int:
    try:
        sheet = ingest(path.read_bytes(), infer_format(path.name))
    except (OSError, IngestionError) as e:
        print(f"inspect: {e}")
        return EXIT_FATAL
    print(f"FILE: {path.name} header_row={sheet.header_row} rows={len(sheet.rows)}")
    print(f"  columns={sheet.columns}")
    for record in normalize_records(sheet.rows[:3]):
        # datetime は表示用に整形、未解析の文字列はそのまま
        print(
            "  ",
            {
                "S.No": record.serial_no,
                "User Name": record.user_name,
                "Division/Units": record.division,
                "In Time": format_timestamp(record.in_time) or record.in_time,
                "Status": record.status,
            },
        )
    return EXIT_SUCCESS_ALL


def _send(args: argparse.Namespace, cfg: DispatchConfig, recipients: RecipientConfigStore,
          auditor: ActivityAuditor, logger: Any) -> int:
    path: Path = args.file
    if not path.is_file():
        logger.error(f"file not found: {path}")
        return EXIT_FATAL
    data = path.read_bytes()
    file_name = clean_upload_name(path.name)

    mail_cfg = _resolve_mail_config(cfg.mail)
    try:
        transport = SmtpMailTransport(mail_cfg)
        matcher = DepartmentMatcher.from_file(cfg.departments.synonyms_file)
    except (ValueError, ConfigError) as e:
        logger.error(f"setup: {e}")
        return EXIT_FATAL

    file_path = None
    if cfg.audit.keep_uploaded_file and not args.no_keep_file:
        file_path = str(store_upload(data, file_name, cfg.audit.upload_dir))

    try:
        result = dispatch_reports(
            data,
            file_name,
            args.uploaded_by,
            store=recipients,
            transport=transport,
            auditor=auditor,
            from_address=mail_cfg.from_address,
            report_format=args.format or cfg.report.format,
            csv_options=cfg.report.csv,
            matcher=matcher,
            timezone=cfg.timezone,
            file_path=file_path,
        )
    except (IngestionError, ProcessingError) as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL

    for cond in result.conditions:
        detail = cond.reason or cond.error or ""
        logger.info(f"condition {cond.condition} {cond.status.value} {detail}".rstrip())

    summary_line = render_summary_line(result)
    # log_summary が "SUMMARY " を付与するため本文のみ渡す
    log_summary(summary_line[len("SUMMARY "):])

    if result.overall_status is WorkflowStatus.PARTIAL_SUCCESS:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def _logs(args: argparse.Namespace, auditor: ActivityAuditor) -> int:
    if args.logs_command == "list":
        entries, total = auditor.list_logs(page=args.page, limit=args.limit)
        for e in entries:
            print(
                f"{e.id}\t{e.upload_date.isoformat()}\t{e.file_name}\t{e.overall_status.value}\t"
                f"records={e.total_records}\tok={e.success_count}\tfailed={e.failure_count}"
            )
        print(f"page={args.page} limit={args.limit} total={total}")
        return EXIT_SUCCESS_ALL

    if args.logs_command == "show":
        entry = auditor.get(args.id)
        if entry is None:
            print(f"activity log not found: {args.id}")
            return EXIT_FATAL
        print(json.dumps(entry.to_dict(), ensure_ascii=False, indent=2))
        return EXIT_SUCCESS_ALL

    attachment = auditor.download(args.id)
    if attachment is None:
        print(f"activity log not found: {args.id}")
        return EXIT_FATAL
    out: Path = args.out
    target = out / attachment.filename if out.is_dir() else out
    target.write_bytes(attachment.content)
    print(f"wrote {target} ({len(attachment.content)} bytes)")
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # NOTE: 空リストを渡したテストで sys.argv が混入しないよう None のときのみ参照
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    # .env を最優先で読み込む (SMTP / DB 接続パラメータ優先順位保証)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if args.command == "inspect":
        return _inspect(args.file)

    conn = _open_db(cfg, logger)
    cursor = conn.cursor() if conn is not None else None
    try:
        try:
            recipients, audit_store = _build_backends(cfg, cursor, logger)
        except (InvalidRecipientConfig, psycopg2.Error) as e:
            logger.error(f"backends: {e}")
            return EXIT_FATAL
        auditor = ActivityAuditor(audit_store, retention_hours=cfg.audit.retention_hours)
        logger.debug(f"mode={'live' if cursor is not None else 'static'} audit={type(audit_store).__name__}")

        if args.command == "send":
            return _send(args, cfg, recipients, auditor, logger)
        if args.command == "cleanup":
            report = auditor.cleanup_old_logs()
            print(
                f"cleanup deleted_entries={report.deleted_entries} "
                f"deleted_files={report.deleted_files} file_errors={report.file_errors}"
            )
            return EXIT_SUCCESS_ALL
        return _logs(args, auditor)
    finally:
        if cursor is not None:
            cursor.close()
        if conn is not None:
            conn.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
