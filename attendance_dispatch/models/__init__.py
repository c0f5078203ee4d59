"""Domain models for the attendance report dispatcher.

Records parsed from the upload, recipient configuration, dispatch results and
the persisted activity log.
"""

from .activity_log import ActivityLogEntry, EmailSentEntry, OverallStatus, RecipientType
from .attendance_record import REPORT_COLUMNS, REQUIRED_COLUMNS, AttendanceRecord
from .config_models import DispatchConfig
from .dispatch_result import ConditionResult, ConditionStatus, DispatchResult, WorkflowStatus
from .recipient_config import RecipientConfig, RecipientRole

__all__ = [
    # Input records
    "AttendanceRecord",
    "REQUIRED_COLUMNS",
    "REPORT_COLUMNS",
    # Configuration
    "DispatchConfig",
    "RecipientConfig",
    "RecipientRole",
    # Results / audit
    "ConditionResult",
    "ConditionStatus",
    "DispatchResult",
    "WorkflowStatus",
    "ActivityLogEntry",
    "EmailSentEntry",
    "OverallStatus",
    "RecipientType",
]
