"""
Detection: single-signal rules, alert materialization and escalation.

Components:
    rules: Brute force, injection, anomaly, privilege escalation, exfiltration
    engine: DetectionEngine cycle runner
    materializer: Merge-or-create write path shared with correlation
    escalation: EscalationMonitor (lifecycle API, escalation cycle, summaries)
    notifications: Log and fan-out notification dispatchers

Example:
    >>> from siem_engine.detection import AlertMaterializer, create_detection_engine
    >>> materializer = AlertMaterializer(repository, LogNotificationDispatcher())
    >>> engine = create_detection_engine(repository, materializer)
    >>> await engine.run_detection_cycle()
"""

from siem_engine.detection.engine import DetectionEngine, create_detection_engine
from siem_engine.detection.escalation import EscalationMonitor, create_escalation_monitor
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.detection.notifications import (
    CompositeNotificationDispatcher,
    LogNotificationDispatcher,
    NotificationIntent,
)
from siem_engine.detection.rules import (
    AnomalousVolumeRule,
    BruteForceRule,
    DataExfiltrationRule,
    DetectionRule,
    InjectionRule,
    PrivilegeEscalationRule,
    RuleEvaluationError,
    build_detection_rules,
)

__all__ = [
    "DetectionEngine",
    "create_detection_engine",
    "EscalationMonitor",
    "create_escalation_monitor",
    "AlertMaterializer",
    "CompositeNotificationDispatcher",
    "LogNotificationDispatcher",
    "NotificationIntent",
    "AnomalousVolumeRule",
    "BruteForceRule",
    "DataExfiltrationRule",
    "DetectionRule",
    "InjectionRule",
    "PrivilegeEscalationRule",
    "RuleEvaluationError",
    "build_detection_rules",
]
