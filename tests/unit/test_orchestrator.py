from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from attendance_dispatch.db.recipient_store import StaticRecipientConfigStore
from attendance_dispatch.excel.reader import IngestionError, ParseError
from attendance_dispatch.logging.activity_log import JsonlActivityLogStore
from attendance_dispatch.models.activity_log import DeliveryStatus, OverallStatus, RecipientType
from attendance_dispatch.models.dispatch_result import ConditionStatus, WorkflowStatus
from attendance_dispatch.services.auditor import ActivityAuditor
from attendance_dispatch.services.orchestrator import (
    ProcessingError,
    dispatch_reports,
    resolve_today,
    run_condition,
)
from attendance_dispatch.services.router import RoutingContext, RoutingRule

NOW = datetime(2024, 3, 15, 10, 0, tzinfo=UTC)
TODAY = "15/03/2024"
YESTERDAY = "14/03/2024"
FROM = "GEIMS Attendance <attendance@test.local>"


@pytest.fixture()
def log_store(tmp_path: Path) -> JsonlActivityLogStore:
    return JsonlActivityLogStore(tmp_path / "activity-log.jsonl")


@pytest.fixture()
def auditor(log_store) -> ActivityAuditor:
    return ActivityAuditor(log_store, retention_hours=48)


def store_of(*items) -> StaticRecipientConfigStore:
    return StaticRecipientConfigStore.from_config(list(items))


def run(data, store, transport, auditor, file_name="attendance.xlsx", **kw):
    return dispatch_reports(
        data,
        file_name,
        "admin",
        store=store,
        transport=transport,
        auditor=auditor,
        from_address=FROM,
        now=kw.pop("now", NOW),
        **kw,
    )


def test_resolve_today_uses_timezone():
    late = datetime(2024, 3, 14, 20, 0, tzinfo=UTC)
    assert resolve_today(late, "UTC") == date(2024, 3, 14)
    assert resolve_today(late, "Asia/Kolkata") == date(2024, 3, 15)
    assert resolve_today(datetime(2024, 3, 14, 20, 0)) == date(2024, 3, 14)


def test_previous_day_rows_reach_dean_only(make_row, xlsx_bytes, fake_transport, auditor, log_store):
    rows = [make_row(i, f"Staff {i}", in_time=f"{YESTERDAY} 0{i}:30") for i in (1, 2, 3)]
    rows[1] = make_row(2, "Staff 2", in_time=f"{YESTERDAY} 02:30", designation="Tutor NG")
    store = store_of({"role": "Dean", "emails": ["dean@x.org"]})

    result = run(xlsx_bytes(rows), store, fake_transport, auditor)

    assert result.overall_status is WorkflowStatus.ALL_CONDITIONS_COMPLETED
    assert [c.condition for c in result.conditions] == ["1", "1B", "2", "3", "4"]
    assert [c.status for c in result.conditions] == [
        ConditionStatus.COMPLETED,
        ConditionStatus.SKIPPED,
        ConditionStatus.SKIPPED,
        ConditionStatus.SKIPPED,
        ConditionStatus.SKIPPED,
    ]
    assert result.conditions[2].reason == "No MS/Deputy MS email configuration found"
    assert result.total_records == 3

    log = result.activity_log
    assert log.id is not None
    assert log.overall_status is OverallStatus.COMPLETED
    assert len(log.emails_sent) == 1
    sent = log.emails_sent[0]
    assert sent.recipient == "dean@x.org"
    assert sent.recipient_type is RecipientType.DEAN
    assert sent.record_count == 3
    assert sent.status is DeliveryStatus.SUCCESS
    assert log.upload_date == NOW

    entries, total = log_store.list_page()
    assert total == 1
    assert entries[0].id == log.id


def test_failure_is_isolated_and_audited(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [
        make_row(1, "A", in_time=f"{YESTERDAY} 09:00"),
        make_row(2, "B", in_time=f"{TODAY} 09:00", division="Radiology"),
        make_row(3, "C", in_time=f"{TODAY} 09:05", division="Pediatrics"),
    ]
    store = store_of(
        {"role": "Dean", "emails": ["dean@x.org"]},
        {"role": "HR Head", "emails": ["hr@x.org"]},
        {"role": "HOD", "department": "Radiology", "emails": ["rad@x.org"]},
        {"role": "HOD", "department": "Pediatrics", "emails": ["ped@x.org"]},
    )
    fake_transport.fail_subjects.append("Management")

    result = run(xlsx_bytes(rows), store, fake_transport, auditor)

    statuses = {c.condition: c.status for c in result.conditions}
    assert statuses == {
        "1": ConditionStatus.COMPLETED,
        "1B": ConditionStatus.SKIPPED,
        "2": ConditionStatus.SKIPPED,
        "3": ConditionStatus.FAILED,
        "4": ConditionStatus.COMPLETED,
    }
    assert result.overall_status is WorkflowStatus.PARTIAL_SUCCESS
    # 条件 3 の失敗後も条件 4 は実行される
    assert len(fake_transport.sent) == 3

    log = result.activity_log
    assert log.overall_status is OverallStatus.PARTIAL
    failed = [e for e in log.emails_sent if e.status is DeliveryStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].recipient == "Management Team"
    assert failed[0].recipient_type is RecipientType.MANAGEMENT
    assert "connection refused" in failed[0].error_message
    hods = [e for e in log.emails_sent if e.recipient_type is RecipientType.HOD]
    assert {(e.recipient, e.department, e.record_count) for e in hods} == {
        ("rad@x.org", "Radiology", 1),
        ("ped@x.org", "Pediatrics", 1),
    }


def test_hod_department_failure_marks_condition_failed(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [
        make_row(1, "B", division="Radiology"),
        make_row(2, "C", division="Pediatrics"),
    ]
    store = store_of(
        {"role": "HOD", "department": "Radiology", "emails": ["rad@x.org"]},
        {"role": "HOD", "department": "Pediatrics", "emails": ["ped@x.org"]},
    )
    fake_transport.fail_subjects.append("Radiology")

    result = run(xlsx_bytes(rows), store, fake_transport, auditor)

    hod = result.conditions[-1]
    assert hod.status is ConditionStatus.FAILED
    assert hod.error.startswith("Radiology: ")
    assert result.overall_status is WorkflowStatus.PARTIAL_SUCCESS
    log = result.activity_log
    assert log.overall_status is OverallStatus.PARTIAL
    assert [(e.recipient, e.status) for e in log.emails_sent] == [
        ("ped@x.org", DeliveryStatus.SUCCESS),
        ("Radiology", DeliveryStatus.FAILED),
    ]


def test_all_sends_failing_gives_failed_log(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00")]
    fake_transport.fail_subjects.append("Dean")
    result = run(xlsx_bytes(rows), store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport, auditor)
    assert result.activity_log.overall_status is OverallStatus.FAILED
    assert result.overall_status is WorkflowStatus.PARTIAL_SUCCESS


def test_nothing_to_send_is_completed(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [make_row(1, "A")]
    result = run(xlsx_bytes(rows), store_of(), fake_transport, auditor)
    assert all(c.status is ConditionStatus.SKIPPED for c in result.conditions)
    assert result.activity_log.emails_sent == ()
    assert result.activity_log.overall_status is OverallStatus.COMPLETED
    assert fake_transport.sent == []


def test_ingestion_failure_aborts_and_audits(xlsx_bytes, fake_transport, auditor, log_store):
    data = xlsx_bytes([["1", "EMP1", "A"]], headers=["S.No", "Attendance id", "User Name"])
    with pytest.raises(IngestionError, match="Missing required columns"):
        run(data, store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport, auditor)

    assert fake_transport.sent == []
    entries, total = log_store.list_page()
    assert total == 1
    entry = entries[0]
    assert entry.overall_status is OverallStatus.FAILED
    assert entry.total_records == 0
    assert len(entry.emails_sent) == 1
    only = entry.emails_sent[0]
    assert only.recipient == "All"
    assert only.recipient_type is RecipientType.SYSTEM
    assert "Users Designation" in only.error_message


def test_invalid_report_format_aborts(make_row, xlsx_bytes, fake_transport, auditor, log_store):
    with pytest.raises(ProcessingError, match="unsupported report format"):
        run(xlsx_bytes([make_row(1, "A")]), store_of(), fake_transport, auditor, report_format="pdf")
    entries, _ = log_store.list_page()
    assert entries[0].overall_status is OverallStatus.FAILED


def test_csv_upload_gives_csv_attachments(make_row, csv_bytes, fake_transport, auditor):
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00")]
    run(csv_bytes(rows), store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport, auditor,
        file_name="attendance.csv")
    att = fake_transport.sent[0].attachments[0]
    assert att.filename == "Attendance_Dean_14-03-2024.csv"
    assert att.content_type == "text/csv"


def test_format_override_wins(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00")]
    run(xlsx_bytes(rows), store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport, auditor,
        report_format="csv")
    assert fake_transport.sent[0].attachments[0].filename.endswith(".csv")


def test_persistence_failure_does_not_change_result(make_row, xlsx_bytes, fake_transport):
    broken = MagicMock()
    broken.add.side_effect = OSError("disk full")
    broken.purge_older_than.return_value = []
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00")]

    result = run(xlsx_bytes(rows), store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport,
                 ActivityAuditor(broken))

    assert result.overall_status is WorkflowStatus.ALL_CONDITIONS_COMPLETED
    assert result.activity_log.id is None
    assert result.activity_log.success_count == 1
    broken.add.assert_called_once()


def test_run_condition_translates_unexpected_error(fake_transport):
    def boom(ctx):
        raise RuntimeError("template exploded")

    rule = RoutingRule("1", "Dean (previous day)", RecipientType.DEAN, "Dean", boom)
    ctx = RoutingContext(records=[], today=date(2024, 3, 15), store=store_of(), transport=fake_transport,
                         from_address=FROM)
    result, entries = run_condition(rule, ctx)
    assert result.status is ConditionStatus.FAILED
    assert result.error == "template exploded"
    assert len(entries) == 1
    assert entries[0].recipient == "Dean"
    assert entries[0].error_message == "template exploded"


def test_one_entry_per_recipient_address(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00")]
    store = store_of({"role": "Dean", "emails": ["dean@x.org", "dean.office@x.org"]})
    result = run(xlsx_bytes(rows), store, fake_transport, auditor)
    assert [e.recipient for e in result.activity_log.emails_sent] == ["dean@x.org", "dean.office@x.org"]
    assert len(fake_transport.sent) == 1



def test_ng_rows_dated_yesterday_do_not_reach_ms(make_row, xlsx_bytes, fake_transport, auditor):
    rows = [make_row(1, "A", in_time=f"{YESTERDAY} 09:00", designation="Tutor NG")]
    store = store_of(
        {"role": "Dean", "emails": ["dean@x.org"]},
        {"role": "Medical Superintendent", "emails": ["ms@x.org"]},
    )
    result = run(xlsx_bytes(rows), store, fake_transport, auditor)
    ms = result.conditions[2]
    assert ms.status is ConditionStatus.SKIPPED
    assert ms.reason == "No TUTOR NG/Junior Resident NG data for current date"
    assert [m.subject.split(" – ")[1] for m in fake_transport.sent] == ["Dean"]


def test_out_of_range_serial_time_is_audited_not_raised(make_row, xlsx_bytes, fake_transport, auditor, log_store):
    rows = [
        make_row(1, "A", in_time=9876543210),
        make_row(2, "B", in_time=f"{YESTERDAY} 09:00"),
    ]
    result = run(xlsx_bytes(rows), store_of({"role": "Dean", "emails": ["dean@x.org"]}), fake_transport, auditor)

    assert result.total_records == 2
    assert result.activity_log.emails_sent[0].record_count == 1
    _, total = log_store.list_page()
    assert total == 1


def test_unexpected_normalization_error_is_audited(make_row, xlsx_bytes, fake_transport, auditor, log_store):
    with patch("attendance_dispatch.services.orchestrator.normalize_records",
               side_effect=RuntimeError("bad cell")):
        with pytest.raises(ParseError, match="bad cell"):
            run(xlsx_bytes([make_row(1, "A")]), store_of(), fake_transport, auditor)

    entries, total = log_store.list_page()
    assert total == 1
    assert entries[0].overall_status is OverallStatus.FAILED
    assert entries[0].emails_sent[0].recipient == "All"
