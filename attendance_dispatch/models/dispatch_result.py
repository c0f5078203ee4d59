from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .activity_log import ActivityLogEntry

"""Dispatch result models.

RuleOutcome is what a routing rule returns; ConditionResult is the
orchestrator's per-condition record (the in-memory run report); DispatchResult
aggregates the five conditions and the persisted audit entry.
"""

__all__ = [
    "ConditionStatus",
    "WorkflowStatus",
    "Delivery",
    "DepartmentFailure",
    "RuleOutcome",
    "ConditionResult",
    "DispatchResult",
]


class ConditionStatus(Enum):
    """Per-condition lifecycle: pending → (completed | skipped | failed)."""
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class WorkflowStatus(Enum):
    ALL_CONDITIONS_COMPLETED = "ALL_CONDITIONS_COMPLETED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"


@dataclass(frozen=True)
class Delivery:
    """One email handed to the transport."""
    recipients: tuple[str, ...]
    record_count: int
    subject: str
    attachment_name: str
    department: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class DepartmentFailure:
    department: str
    error: str


@dataclass(frozen=True)
class RuleOutcome:
    deliveries: tuple[Delivery, ...] = ()
    failures: tuple[DepartmentFailure, ...] = ()  # HOD 部門単位の送信失敗
    skipped_departments: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConditionResult:
    condition: str  # "1", "1B", "2", "3", "4"
    name: str
    status: ConditionStatus
    outcome: RuleOutcome | None = None
    reason: str | None = None  # skip reason
    error: str | None = None  # failure message (no traceback)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "condition": self.condition,
            "name": self.name,
            "status": self.status.value,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        if self.outcome is not None and self.outcome.deliveries:
            data["deliveries"] = [
                {
                    "recipients": list(d.recipients),
                    "count": d.record_count,
                    "department": d.department,
                }
                for d in self.outcome.deliveries
            ]
        if self.outcome is not None and self.outcome.skipped_departments:
            data["skipped_departments"] = list(self.outcome.skipped_departments)
        return data


@dataclass(frozen=True)
class DispatchResult:
    conditions: tuple[ConditionResult, ...]
    overall_status: WorkflowStatus
    activity_log: ActivityLogEntry
    total_records: int
    elapsed_seconds: float
    workflow: str = "SEQUENTIAL"

    def count(self, status: ConditionStatus) -> int:
        return sum(1 for c in self.conditions if c.status is status)

    def to_dict(self) -> dict[str, Any]:
        """Structured condition-by-condition outcome (safe to expose to callers)."""
        return {
            "workflow": self.workflow,
            "overall_status": self.overall_status.value,
            "total_records": self.total_records,
            "conditions": [c.to_dict() for c in self.conditions],
            "activity_log_status": self.activity_log.overall_status.value,
        }
