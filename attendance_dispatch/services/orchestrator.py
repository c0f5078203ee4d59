from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

from ..excel.normalizer import normalize_records
from ..excel.reader import IngestionError, ParseError, infer_format, ingest
from ..excel.writer import resolve_format
from ..models.activity_log import ActivityLogEntry, EmailSentEntry, OverallStatus, RecipientType
from ..models.attendance_record import AttendanceRecord
from ..models.config_models import CsvOptions
from ..models.dispatch_result import (
    ConditionResult,
    ConditionStatus,
    DispatchResult,
    RuleOutcome,
    WorkflowStatus,
)
from ..db.recipient_store import RecipientConfigStore
from .auditor import ActivityAuditor
from .departments import DepartmentMatcher
from .mailer import MailTransport
from .progress import ConditionProgressTracker
from .router import ROUTING_RULES, NoMatchingRecords, RecipientConfigMissing, RoutingContext, RoutingRule

"""Dispatch orchestration.

``dispatch_reports`` is the one entry point for an uploaded attendance file:

1. ingest + normalize (any failure aborts the run, no condition executes)
2. run every routing rule in order through ``run_condition``
3. build exactly one ActivityLogEntry and hand it to the auditor
4. best-effort retention sweep

Conditions are isolated from each other: a skip only shows up in the per-run
report, an exception becomes one failed emails_sent entry and the next
condition still runs.
"""

__all__ = [
    "ProcessingError",
    "run_condition",
    "dispatch_reports",
    "load_records",
    "resolve_today",
]

logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    """Fatal error before any condition starts (bad format override etc.)."""


def resolve_today(now: datetime, timezone: str = "UTC") -> date:
    """Calendar date of ``now`` in the reporting timezone."""
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(ZoneInfo(timezone)).date()


def load_records(data: bytes, fmt: str) -> list[AttendanceRecord]:
    """Ingest and normalize an upload.

    Raises:
        IngestionError: unreadable input, missing columns, or a row that could
            not be normalized (wrapped as ParseError)
    """
    sheet = ingest(data, fmt)
    logger.debug("header row=%d columns=%s", sheet.header_row, sheet.columns)
    try:
        return normalize_records(sheet.rows)
    except Exception as e:  # 想定外のセル値
        raise ParseError(f"File processing error: {e}") from e


def _success_entries(rule: RoutingRule, outcome: RuleOutcome) -> list[EmailSentEntry]:
    entries: list[EmailSentEntry] = []
    for delivery in outcome.deliveries:
        for email in delivery.recipients:
            entries.append(
                EmailSentEntry.success(
                    recipient=email,
                    recipient_type=rule.recipient_type,
                    record_count=delivery.record_count,
                    department=delivery.department,
                )
            )
    for failure in outcome.failures:
        entries.append(
            EmailSentEntry.failure(
                recipient=failure.department,
                recipient_type=rule.recipient_type,
                error_message=failure.error,
                department=failure.department,
            )
        )
    return entries


def run_condition(rule: RoutingRule, ctx: RoutingContext) -> tuple[ConditionResult, list[EmailSentEntry]]:
    """Execute one condition and translate its outcome into audit entries."""
    logger.info("condition %s (%s) started", rule.condition, rule.name)
    try:
        outcome = rule.run(ctx)
    except (RecipientConfigMissing, NoMatchingRecords) as skip:
        logger.info("condition %s skipped: %s", rule.condition, skip)
        return (
            ConditionResult(rule.condition, rule.name, ConditionStatus.SKIPPED, reason=str(skip)),
            [],
        )
    except Exception as e:
        logger.error("condition %s failed: %s", rule.condition, e)
        return (
            ConditionResult(rule.condition, rule.name, ConditionStatus.FAILED, error=str(e)),
            [EmailSentEntry.failure(rule.failure_label, rule.recipient_type, str(e))],
        )

    entries = _success_entries(rule, outcome)
    if outcome.failures:
        errors = "; ".join(f"{f.department}: {f.error}" for f in outcome.failures)
        logger.error("condition %s failed for %d department(s)", rule.condition, len(outcome.failures))
        return (
            ConditionResult(rule.condition, rule.name, ConditionStatus.FAILED, outcome=outcome, error=errors),
            entries,
        )
    logger.info("condition %s completed deliveries=%d", rule.condition, len(outcome.deliveries))
    return ConditionResult(rule.condition, rule.name, ConditionStatus.COMPLETED, outcome=outcome), entries


def dispatch_reports(
    data: bytes,
    file_name: str,
    uploaded_by: str,
    *,
    store: RecipientConfigStore,
    transport: MailTransport,
    auditor: ActivityAuditor,
    from_address: str,
    report_format: str | None = None,
    csv_options: CsvOptions | None = None,
    matcher: DepartmentMatcher | None = None,
    timezone: str = "UTC",
    now: datetime | None = None,
    file_path: str | None = None,
    rules: Sequence[RoutingRule] = ROUTING_RULES,
) -> DispatchResult:
    """Run the full workflow for one upload.

    Args:
        data: Uploaded file bytes
        file_name: Uploaded file name (format inference and audit record)
        uploaded_by: Uploader identity stored in the audit record
        store: Recipient configuration lookup
        transport: Mail transport, constructed once by the caller
        auditor: Audit writer
        from_address: RFC 5322 From header value
        report_format: "csv" / "xlsx" override, None to follow the upload
        now: Clock override (tests); defaults to the current UTC time

    Returns:
        DispatchResult with one ConditionResult per rule

    Raises:
        IngestionError: Unreadable file or missing columns (audited as failed)
        ProcessingError: Invalid report format (audited as failed)
    """
    start_time = datetime.now(UTC)
    now = now or start_time
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    def _abort(message: str) -> None:
        entry = ActivityLogEntry.create(
            file_name=file_name,
            total_records=0,
            emails_sent=[EmailSentEntry.failure("All", RecipientType.SYSTEM, message)],
            uploaded_by=uploaded_by,
            file_path=file_path,
            overall_status=OverallStatus.FAILED,
            upload_date=now,
        )
        auditor.record_run(entry)
        auditor.cleanup_old_logs(now)

    try:
        fmt = resolve_format(report_format, file_name)
    except ValueError as e:
        _abort(str(e))
        raise ProcessingError(str(e)) from e

    try:
        records = load_records(data, infer_format(file_name))
    except IngestionError as e:
        logger.error("ingestion failed for %s: %s", file_name, e)
        _abort(str(e))
        raise

    logger.info("starting dispatch workflow file=%s records=%d", file_name, len(records))
    ctx = RoutingContext(
        records=records,
        today=resolve_today(now, timezone),
        store=store,
        transport=transport,
        from_address=from_address,
        fmt=fmt,
        csv_options=csv_options,
        matcher=matcher or DepartmentMatcher.from_file(),
    )

    results: list[ConditionResult] = []
    emails_sent: list[EmailSentEntry] = []
    has_any_failure = False
    with ConditionProgressTracker(len(rules)) as progress:
        for rule in rules:
            progress.start_condition(rule.condition, rule.name)
            result, entries = run_condition(rule, ctx)
            results.append(result)
            emails_sent.extend(entries)
            if result.status is ConditionStatus.FAILED:
                has_any_failure = True
            progress.set_postfix(
                sent=sum(1 for r in results if r.status is ConditionStatus.COMPLETED),
                skipped=sum(1 for r in results if r.status is ConditionStatus.SKIPPED),
                failed=sum(1 for r in results if r.status is ConditionStatus.FAILED),
            )
            progress.finish_condition()

    entry = ActivityLogEntry.create(
        file_name=file_name,
        total_records=len(records),
        emails_sent=emails_sent,
        uploaded_by=uploaded_by,
        file_path=file_path,
        upload_date=now,
    )
    stored = auditor.record_run(entry)
    auditor.cleanup_old_logs(now)

    elapsed = (datetime.now(UTC) - start_time).total_seconds()
    workflow_status = WorkflowStatus.PARTIAL_SUCCESS if has_any_failure else WorkflowStatus.ALL_CONDITIONS_COMPLETED
    logger.info("dispatch workflow finished status=%s", workflow_status.value)
    return DispatchResult(
        conditions=tuple(results),
        overall_status=workflow_status,
        activity_log=stored or entry,
        total_records=len(records),
        elapsed_seconds=elapsed,
    )

