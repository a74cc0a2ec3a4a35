"""
Domain types.

Check results, events, notifications and SLA models, plus the role to
permission mapping used to authorize operators.
"""

from .models import (
    CheckDefinition,
    CheckResult,
    MonitoringEvent,
    MonitoringStatus,
    MonitoringSummary,
    NotificationMessage,
    NotificationSeverity,
    SlaEvent,
    SlaEventType,
    SlaMetrics,
    SlaReport,
    SlaState,
    SlaStatus,
    SlaViolation,
)
from .permissions import ROLE_PERMISSIONS, Permission, Role, derive_permissions

__all__ = [
    "CheckDefinition",
    "CheckResult",
    "MonitoringEvent",
    "MonitoringStatus",
    "MonitoringSummary",
    "NotificationMessage",
    "NotificationSeverity",
    "SlaEvent",
    "SlaEventType",
    "SlaMetrics",
    "SlaReport",
    "SlaState",
    "SlaStatus",
    "SlaViolation",
    "ROLE_PERMISSIONS",
    "Permission",
    "Role",
    "derive_permissions",
]
