"""
Shared Pydantic data models for the detection engine.

Modules:
    events: Normalized log events
    alerts: Alert candidates, persisted alerts and their lifecycle
    cycles: Results returned by the engine cycles

Example:
    >>> from siem_engine.models import LogEvent, EventCategory
    >>> from siem_engine.models import Alert, AlertSeverity, AlertStatus
"""

# Event models
from siem_engine.models.events import (
    EventCategory,
    LogEvent,
    LogLevel,
)

# Alert models
from siem_engine.models.alerts import (
    ALLOWED_TRANSITIONS,
    OPEN_STATUSES,
    Alert,
    AlertCandidate,
    AlertSeverity,
    AlertStatus,
    AlertType,
    DetectionMethod,
    InvalidTransitionError,
    NotificationRecord,
    TimelineEntry,
    build_dedup_key,
)

# Cycle result models
from siem_engine.models.cycles import (
    AlertSummary,
    CycleResult,
    EscalationResult,
)

__all__ = [
    # Events
    "EventCategory",
    "LogEvent",
    "LogLevel",
    # Alerts
    "ALLOWED_TRANSITIONS",
    "OPEN_STATUSES",
    "Alert",
    "AlertCandidate",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "DetectionMethod",
    "InvalidTransitionError",
    "NotificationRecord",
    "TimelineEntry",
    "build_dedup_key",
    # Cycles
    "AlertSummary",
    "CycleResult",
    "EscalationResult",
]
