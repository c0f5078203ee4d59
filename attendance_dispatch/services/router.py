from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from ..excel.writer import Attachment, render_report
from ..models.activity_log import RecipientType
from ..models.attendance_record import AttendanceRecord
from ..models.config_models import CsvOptions
from ..models.dispatch_result import DepartmentFailure, Delivery, RuleOutcome
from ..models.recipient_config import RecipientConfig, RecipientRole
from ..db.recipient_store import RecipientConfigStore
from .date_filter import filter_by_date, filter_leave_absent
from .departments import DepartmentMatcher
from .mailer import MailTransport, SendFailure, compose_report_mail

"""Recipient routing rules.

Five conditions, always evaluated in this order:

  1   Dean                      previous day, dated records only
  1B  Dean                      leave/absent rows, any date
  2   MS + Deputy MS            current day, TUTOR NG / Junior Resident NG
  3   management roles          current day
  4   HOD (one mail per dept)   current day, division matches department

A rule either sends (RuleOutcome with deliveries) or raises one of the skip
exceptions below. Rendering and transport errors surface as SendFailure; rule 4
catches them per department so the remaining departments still run.
"""

__all__ = [
    "RecipientConfigMissing",
    "NoMatchingRecords",
    "RoutingContext",
    "RoutingRule",
    "ROUTING_RULES",
    "MANAGEMENT_ROLES",
    "designation_is_ng",
    "report_base_name",
]

logger = logging.getLogger(__name__)

DATE_LABEL_FORMAT = "%d-%m-%Y"

MS_ROLES = (RecipientRole.MEDICAL_SUPERINTENDENT, RecipientRole.DEPUTY_MEDICAL_SUPERINTENDENT)
MANAGEMENT_ROLES = (
    RecipientRole.DEAN,
    RecipientRole.MEDICAL_DIRECTOR,
    RecipientRole.MEDICAL_REPRESENTATIVE,
    RecipientRole.MEDICAL_SUPERINTENDENT,
    RecipientRole.HR_HEAD,
)
NG_DESIGNATIONS = ("tutor ng", "junior resident ng")

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


class RecipientConfigMissing(Exception):
    """No active recipient configuration for a rule (skip, not a failure)."""


class NoMatchingRecords(Exception):
    """The rule's record filter selected nothing (skip, not a failure)."""


@dataclass(frozen=True)
class RoutingContext:
    records: Sequence[AttendanceRecord]
    today: date
    store: RecipientConfigStore
    transport: MailTransport
    from_address: str
    fmt: str = "xlsx"
    csv_options: CsvOptions | None = None
    matcher: DepartmentMatcher = field(default_factory=DepartmentMatcher)

    @property
    def yesterday(self) -> date:
        return self.today - timedelta(days=1)


@dataclass(frozen=True)
class RoutingRule:
    condition: str
    name: str
    recipient_type: RecipientType
    failure_label: str  # emails_sent の recipient 欄 (条件全体が失敗したとき)
    run: Callable[[RoutingContext], RuleOutcome]


def _label(day: date) -> str:
    return day.strftime(DATE_LABEL_FORMAT)


def report_base_name(prefix: str, day: date) -> str:
    return f"{prefix}_{_label(day)}"


def designation_is_ng(designation: str | None) -> bool:
    d = (designation or "").lower()
    return any(token in d for token in NG_DESIGNATIONS)


def _unique_emails(configs: Iterable[RecipientConfig]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for cfg in configs:
        for email in cfg.emails:
            seen.setdefault(email, None)
    return tuple(seen)


def _deliver(
    ctx: RoutingContext,
    recipients: Sequence[str],
    records: Sequence[AttendanceRecord],
    sheet_name: str,
    base_name: str,
    subject: str,
    greeting: str,
    lines: Sequence[str],
    department: str | None = None,
) -> Delivery:
    """Render one report and hand it to the transport."""
    try:
        attachment: Attachment = render_report(records, ctx.fmt, sheet_name, base_name, ctx.csv_options)
    except Exception as e:
        raise SendFailure(f"report rendering failed: {e}") from e
    message = compose_report_mail(
        from_address=ctx.from_address,
        recipients=recipients,
        subject=subject,
        greeting=greeting,
        lines=lines,
        record_count=len(records),
        attachment=attachment,
    )
    message_id = ctx.transport.send_mail(message)
    logger.info("sent %s records=%d to=%s", attachment.filename, len(records), message.to_header)
    return Delivery(
        recipients=tuple(recipients),
        record_count=len(records),
        subject=subject,
        attachment_name=attachment.filename,
        department=department,
        message_id=message_id,
    )


def _require(configs: list[RecipientConfig], reason: str) -> tuple[str, ...]:
    emails = _unique_emails(configs)
    if not emails:
        raise RecipientConfigMissing(reason)
    return emails


def send_dean_previous_day(ctx: RoutingContext) -> RuleOutcome:
    recipients = _require(ctx.store.find_active([RecipientRole.DEAN]), "No Dean email configuration found")
    day = ctx.yesterday
    records = filter_by_date(ctx.records, day, include_status_only=False)
    if not records:
        raise NoMatchingRecords(f"No data available for previous day ({day.isoformat()})")
    delivery = _deliver(
        ctx,
        recipients,
        records,
        sheet_name="Dean Report",
        base_name=report_base_name("Attendance_Dean", day),
        subject=f"Daily Attendance Report – Dean – {_label(day)}",
        greeting="Dean",
        lines=[
            f"Please find attached the daily attendance report for {_label(day)}.",
            "This report contains attendance records for all staff members.",
        ],
    )
    return RuleOutcome(deliveries=(delivery,))


def send_dean_leave_absent(ctx: RoutingContext) -> RuleOutcome:
    recipients = _require(ctx.store.find_active([RecipientRole.DEAN]), "No Dean email configuration found")
    records = filter_leave_absent(ctx.records)
    if not records:
        raise NoMatchingRecords("No Leave/Absent records found")
    day = ctx.today
    delivery = _deliver(
        ctx,
        recipients,
        records,
        sheet_name="Leave Absent Report",
        base_name=report_base_name("Leave_Absent_Dean", day),
        subject=f"Leave & Absent Report – Dean – {_label(day)}",
        greeting="Dean",
        lines=[
            f"Please find attached the Leave and Absent report for {_label(day)}.",
            "This report contains all staff members on Leave or marked Absent.",
        ],
    )
    return RuleOutcome(deliveries=(delivery,))


def send_medical_superintendent(ctx: RoutingContext) -> RuleOutcome:
    recipients = _require(ctx.store.find_active(MS_ROLES), "No MS/Deputy MS email configuration found")
    day = ctx.today
    records = [
        r for r in filter_by_date(ctx.records, day, include_status_only=True)
        if designation_is_ng(r.designation)
    ]
    if not records:
        raise NoMatchingRecords("No TUTOR NG/Junior Resident NG data for current date")
    delivery = _deliver(
        ctx,
        recipients,
        records,
        sheet_name="MS Report",
        base_name=report_base_name("Attendance_MS", day),
        subject=f"Daily Attendance Report – TUTOR NG & Junior Resident NG – {_label(day)}",
        greeting="Medical Superintendent / Deputy Medical Superintendent",
        lines=[
            f"Please find attached the daily attendance report for {_label(day)}.",
            "This report contains attendance records for TUTOR NG and Junior Resident NG staff.",
        ],
    )
    return RuleOutcome(deliveries=(delivery,))


def send_management(ctx: RoutingContext) -> RuleOutcome:
    recipients = _require(
        ctx.store.find_active(MANAGEMENT_ROLES), "No management team email configuration found"
    )
    day = ctx.today
    records = filter_by_date(ctx.records, day, include_status_only=True)
    if not records:
        raise NoMatchingRecords("No data available for current date")
    delivery = _deliver(
        ctx,
        recipients,
        records,
        sheet_name="Management Report",
        base_name=report_base_name("Attendance_Management", day),
        subject=f"Daily Attendance Report – Management – {_label(day)}",
        greeting="Management Team",
        lines=[
            f"Please find attached the comprehensive daily attendance report for {_label(day)}.",
            "This report contains attendance records for all staff members.",
        ],
    )
    return RuleOutcome(deliveries=(delivery,))


def send_hods(ctx: RoutingContext) -> RuleOutcome:
    configs = ctx.store.find_active([RecipientRole.HOD])
    if not configs:
        raise RecipientConfigMissing("No HOD email configuration found")
    day = ctx.today
    todays = filter_by_date(ctx.records, day, include_status_only=True)

    deliveries: list[Delivery] = []
    failures: list[DepartmentFailure] = []
    skipped: list[str] = []
    for cfg in configs:
        department = cfg.department or ""
        records = [r for r in todays if ctx.matcher.matches(r.division, department)]
        if not records:
            logger.info("no data for department: %s", department)
            skipped.append(department)
            continue
        try:
            deliveries.append(
                _deliver(
                    ctx,
                    cfg.emails,
                    records,
                    sheet_name=department,
                    base_name=report_base_name(f"Attendance_{_NON_ALNUM.sub('_', department)}", day),
                    subject=f"Daily Attendance Report – {department} – {_label(day)}",
                    greeting=f"HOD - {department}",
                    lines=[
                        f"Please find attached the daily attendance report for your department for {_label(day)}.",
                        f"Department: {department}",
                    ],
                    department=department,
                )
            )
        except Exception as e:
            logger.error("HOD report failed department=%s: %s", department, e)
            failures.append(DepartmentFailure(department=department, error=str(e)))

    if not deliveries and not failures:
        raise NoMatchingRecords("No HOD data found for current date")
    return RuleOutcome(
        deliveries=tuple(deliveries),
        failures=tuple(failures),
        skipped_departments=tuple(skipped),
    )


ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule("1", "Dean (previous day)", RecipientType.DEAN, "Dean", send_dean_previous_day),
    RoutingRule("1B", "Dean (Leave/Absent)", RecipientType.DEAN, "Dean (Leave/Absent)", send_dean_leave_absent),
    RoutingRule("2", "MS/Deputy MS", RecipientType.MS_DEPUTY_MS, "MS/Deputy MS", send_medical_superintendent),
    RoutingRule("3", "Management Team", RecipientType.MANAGEMENT, "Management Team", send_management),
    RoutingRule("4", "HODs", RecipientType.HOD, "HODs", send_hods),
)
