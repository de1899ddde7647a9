"""
Shared fixtures for siem_engine tests.

Provides:
- Fixed reference times
- LogEvent and AlertCandidate factories
- In-memory repository and a recording notification dispatcher
- Pre-wired materializer, engines and escalation monitor
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from siem_engine.config.models import CorrelationConfig, DetectionConfig
from siem_engine.correlation.engine import CorrelationEngine, create_correlation_engine
from siem_engine.detection.engine import DetectionEngine, create_detection_engine
from siem_engine.detection.escalation import EscalationMonitor
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.interfaces.notifier import NotificationDispatcher, NotificationEnqueueError
from siem_engine.models.alerts import (
    AlertCandidate,
    AlertSeverity,
    AlertType,
    DetectionMethod,
)
from siem_engine.models.events import EventCategory, LogEvent, LogLevel
from siem_engine.storage.memory import InMemoryEventRepository


# =============================================================================
# TIME
# =============================================================================


# Aligned to a 5-minute boundary so bucket math is easy to reason about
T0 = datetime(2025, 1, 26, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0() -> datetime:
    """Fixed reference time."""
    return T0


# =============================================================================
# FACTORIES
# =============================================================================


def make_event(
    message: str,
    timestamp: datetime = T0,
    category: EventCategory = EventCategory.SECURITY,
    source: str = "sshd",
    source_ip: Optional[str] = "203.0.113.10",
    severity: int = 5,
    level: LogLevel = LogLevel.WARN,
    details: Optional[Dict[str, Any]] = None,
    processed: bool = False,
) -> LogEvent:
    """Build a LogEvent with test defaults."""
    return LogEvent(
        timestamp=timestamp,
        level=level,
        source=source,
        message=message,
        category=category,
        severity=severity,
        source_ip=source_ip,
        details=details or {},
        processed=processed,
    )


def failed_logins(
    count: int,
    start: datetime = T0,
    source_ip: str = "203.0.113.10",
    spacing: timedelta = timedelta(seconds=5),
) -> List[LogEvent]:
    """Build failed-password events from one IP."""
    return [
        make_event(
            f"Failed password for admin from {source_ip}",
            timestamp=start + spacing * i,
            source_ip=source_ip,
        )
        for i in range(count)
    ]


def make_candidate(
    alert_type: AlertType = AlertType.BRUTE_FORCE,
    severity: AlertSeverity = AlertSeverity.HIGH,
    confidence: float = 90,
    source_ip: Optional[str] = "203.0.113.10",
    related_log_ids: Iterable[str] = ("log-1",),
    correlation_id: Optional[str] = None,
    affected_assets: Iterable[str] = ("Authentication System",),
    window: timedelta = timedelta(minutes=5),
    rule_name: str = "brute_force",
) -> AlertCandidate:
    """Build an AlertCandidate with test defaults."""
    return AlertCandidate(
        title=f"{alert_type.value} finding",
        description="test finding",
        alert_type=alert_type,
        severity=severity,
        detection_method=(
            DetectionMethod.CORRELATION if correlation_id else DetectionMethod.SIGNATURE
        ),
        confidence=confidence,
        source_ip=source_ip,
        related_log_ids=frozenset(related_log_ids),
        affected_assets=frozenset(affected_assets),
        correlation_id=correlation_id,
        rule_name=rule_name,
        window=window,
    )


# =============================================================================
# COLLABORATORS
# =============================================================================


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that records intents and can be told to fail."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, List[str], str]] = []
        self.fail = False

    async def enqueue(self, alert_id: str, channels: Iterable[str], reason: str) -> None:
        if self.fail:
            raise NotificationEnqueueError("queue unavailable")
        self.calls.append((alert_id, sorted(channels), reason))

    def reasons(self) -> List[str]:
        return [reason for _, _, reason in self.calls]


@pytest.fixture
def repository() -> InMemoryEventRepository:
    """Empty in-memory repository."""
    return InMemoryEventRepository()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    """Recording notification dispatcher."""
    return RecordingDispatcher()


@pytest.fixture
def materializer(
    repository: InMemoryEventRepository,
    dispatcher: RecordingDispatcher,
) -> AlertMaterializer:
    """Materializer over the in-memory repository."""
    return AlertMaterializer(repository=repository, dispatcher=dispatcher)


@pytest.fixture
def detection_engine(
    repository: InMemoryEventRepository,
    materializer: AlertMaterializer,
) -> DetectionEngine:
    """Detection engine with default rules."""
    return create_detection_engine(repository, materializer, DetectionConfig())


@pytest.fixture
def correlation_engine(
    repository: InMemoryEventRepository,
    materializer: AlertMaterializer,
) -> CorrelationEngine:
    """Correlation engine with default rules."""
    return create_correlation_engine(repository, materializer, CorrelationConfig())


@pytest.fixture
def monitor(
    repository: InMemoryEventRepository,
    dispatcher: RecordingDispatcher,
    materializer: AlertMaterializer,
    detection_engine: DetectionEngine,
) -> EscalationMonitor:
    """Escalation monitor with default tiers."""
    return EscalationMonitor(
        repository=repository,
        dispatcher=dispatcher,
        materializer=materializer,
        detection_engine=detection_engine,
    )
