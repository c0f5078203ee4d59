from __future__ import annotations

from ..models.dispatch_result import ConditionStatus, DispatchResult

"""SUMMARY line rendering for a dispatch run.

Format (one line, space separated key=value pairs):

SUMMARY file={name} records={n} conditions={n} sent={n} skipped={n} failed={n}
emails_ok={n} emails_failed={n} status={overall} elapsed_sec={s}

The leading "SUMMARY " is added by the log formatter; ``render_summary_line``
returns the full text so it can also be printed or asserted directly.
"""

__all__ = [
    "format_elapsed",
    "render_summary_line",
]


def format_elapsed(seconds: float) -> str:
    """Render seconds without scientific notation or trailing zeros."""
    if seconds <= 0:
        return "0"
    if seconds == int(seconds):
        return str(int(seconds))
    if seconds < 0.01:
        return f"{seconds:.6f}".rstrip("0").rstrip(".")
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: DispatchResult) -> str:
    """Render the SUMMARY line for a finished run.

    Examples:
        >>> # 5 conditions, Dean sent to one address, everything else skipped
        >>> render_summary_line(result)  # doctest: +SKIP
        'SUMMARY file=att.xlsx records=3 conditions=5 sent=1 skipped=4 failed=0 emails_ok=1 ...'
    """
    log = result.activity_log
    return (
        f"SUMMARY file={log.file_name} "
        f"records={result.total_records} "
        f"conditions={len(result.conditions)} "
        f"sent={result.count(ConditionStatus.COMPLETED)} "
        f"skipped={result.count(ConditionStatus.SKIPPED)} "
        f"failed={result.count(ConditionStatus.FAILED)} "
        f"emails_ok={log.success_count} "
        f"emails_failed={log.failure_count} "
        f"status={log.overall_status.value} "
        f"elapsed_sec={format_elapsed(result.elapsed_seconds)}"
    )
