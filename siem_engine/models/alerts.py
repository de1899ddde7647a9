"""
Alert data models for the detection engine.

This module defines alert-related structures: the transient candidates that
rules emit, the persisted Alert with its lifecycle, and the timeline and
notification records attached to it.

Models:
    AlertSeverity: Severity levels (low, medium, high, critical)
    AlertStatus: Lifecycle status (active, investigating, resolved, false_positive)
    AlertType: Attack category
    DetectionMethod: How the finding was produced (signature, anomaly, correlation)
    TimelineEntry: One entry in an alert's audit trail
    NotificationRecord: A notification intent the engine has enqueued
    AlertCandidate: Rule output waiting to be materialized
    Alert: Persisted, evolving security finding

Note:
    Alerts are updated by returning modified copies (model_copy). Every
    mutating method appends a timeline entry, and risk_score is a computed
    field so it always reflects the current severity and confidence.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator


DEFAULT_ACTOR = "system"


class InvalidTransitionError(Exception):
    """Raised when an alert status change is not allowed by the lifecycle."""

    def __init__(self, alert_id: str, current: "AlertStatus", requested: "AlertStatus"):
        self.alert_id = alert_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Alert {alert_id} cannot move from {current.value} to {requested.value}"
        )


class AlertSeverity(str, Enum):
    """
    Alert severity levels.

    Attributes:
        LOW: Informational finding.
        MEDIUM: Suspicious activity worth a look.
        HIGH: Likely attack, notify immediately.
        CRITICAL: Active compromise, notify immediately.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        """Weight used by the risk score."""
        return _SEVERITY_WEIGHTS[self]

    @property
    def rank(self) -> int:
        """Ordinal rank (low=0 ... critical=3)."""
        return _SEVERITY_ORDER.index(self)

    @property
    def notifies_immediately(self) -> bool:
        """Check if alerts of this severity are pushed on creation."""
        return self in (AlertSeverity.HIGH, AlertSeverity.CRITICAL)

    @classmethod
    def max(cls, a: "AlertSeverity", b: "AlertSeverity") -> "AlertSeverity":
        """Return the more severe of two levels."""
        return a if a.rank >= b.rank else b


_SEVERITY_ORDER = [
    AlertSeverity.LOW,
    AlertSeverity.MEDIUM,
    AlertSeverity.HIGH,
    AlertSeverity.CRITICAL,
]

_SEVERITY_WEIGHTS: Dict[AlertSeverity, int] = {
    AlertSeverity.LOW: 2,
    AlertSeverity.MEDIUM: 5,
    AlertSeverity.HIGH: 8,
    AlertSeverity.CRITICAL: 10,
}


class AlertStatus(str, Enum):
    """Alert lifecycle status."""

    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"

    @property
    def is_open(self) -> bool:
        """Check if the alert still participates in dedup and escalation."""
        return self in (AlertStatus.ACTIVE, AlertStatus.INVESTIGATING)

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is allowed."""
        return not self.is_open


OPEN_STATUSES: FrozenSet[AlertStatus] = frozenset(
    {AlertStatus.ACTIVE, AlertStatus.INVESTIGATING}
)

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset(
        {AlertStatus.INVESTIGATING, AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE}
    ),
    AlertStatus.INVESTIGATING: frozenset(
        {AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE}
    ),
    AlertStatus.RESOLVED: frozenset(),
    AlertStatus.FALSE_POSITIVE: frozenset(),
}


class AlertType(str, Enum):
    """Attack category of an alert."""

    BRUTE_FORCE = "brute_force"
    SQL_INJECTION = "sql_injection"
    XSS_ATTACK = "xss_attack"
    DDOS = "ddos"
    MALWARE = "malware"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_EXFILTRATION = "data_exfiltration"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    ANOMALY = "anomaly"
    POLICY_VIOLATION = "policy_violation"
    OTHER = "other"
    # Composite findings
    ATTACK_CHAIN = "attack_chain"
    COORDINATED_ATTACK = "coordinated_attack"
    LATERAL_MOVEMENT = "lateral_movement"
    DATA_BREACH = "data_breach"


class DetectionMethod(str, Enum):
    """How a finding was produced."""

    SIGNATURE = "signature"
    ANOMALY = "anomaly"
    CORRELATION = "correlation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_dedup_key(alert_type: AlertType, source_ip: Optional[str]) -> str:
    """
    Build the dedup key for a single-signal detection.

    Args:
        alert_type: The alert type.
        source_ip: The source IP, if any.

    Returns:
        str: Key of the form "type:ip".

    Example:
        >>> build_dedup_key(AlertType.BRUTE_FORCE, "203.0.113.10")
        'brute_force:203.0.113.10'
    """
    return f"{alert_type.value}:{source_ip or '-'}"


class TimelineEntry(BaseModel):
    """One entry in an alert's audit trail."""

    model_config = {"frozen": True, "extra": "forbid"}

    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the entry was recorded",
    )
    event: str = Field(
        ...,
        description="Short event name (created, merged, status_changed, ...)",
    )
    detail: str = Field(
        default="",
        description="Human-readable detail",
    )
    actor: str = Field(
        default=DEFAULT_ACTOR,
        description="Who caused the entry",
    )


class NotificationRecord(BaseModel):
    """
    A notification intent the engine has enqueued for an alert.

    Only enqueueing is tracked here; delivery is owned by the dispatcher.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    channels: List[str] = Field(
        ...,
        description="Channels named in the intent",
        min_length=1,
    )
    reason: str = Field(
        ...,
        description="Why the intent was enqueued (immediate, escalation:<tier>)",
    )
    queued_at: datetime = Field(
        default_factory=_utcnow,
        description="When the intent was enqueued",
    )


class AlertCandidate(BaseModel):
    """
    Rule output waiting to be materialized into an Alert.

    Attributes:
        title: Alert title.
        description: Alert description.
        alert_type: Attack category.
        severity: Severity assigned by the rule.
        detection_method: How the finding was produced.
        confidence: Confidence from 0 to 100.
        source_ip: Source IP the finding is about.
        related_log_ids: Ids of contributing events.
        related_alert_ids: Ids of contributing alerts (correlations only).
        affected_assets: Assets touched by the activity.
        attack_vector: Short attack vector description.
        correlation_id: Stable id for composite findings.
        rule_name: Name of the producing rule.
        window: Window of the producing rule, bounds the dedup lookup.

    Example:
        >>> candidate = AlertCandidate(
        ...     title="Brute Force Attack Detected",
        ...     description="6 failed login attempts from 203.0.113.10",
        ...     alert_type=AlertType.BRUTE_FORCE,
        ...     severity=AlertSeverity.HIGH,
        ...     detection_method=DetectionMethod.SIGNATURE,
        ...     confidence=90,
        ...     source_ip="203.0.113.10",
        ...     rule_name="brute_force",
        ...     window=timedelta(minutes=5),
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    title: str = Field(..., description="Alert title", min_length=1)
    description: str = Field(default="", description="Alert description")
    alert_type: AlertType = Field(..., description="Attack category")
    severity: AlertSeverity = Field(..., description="Severity assigned by the rule")
    detection_method: DetectionMethod = Field(
        ...,
        description="How the finding was produced",
    )
    confidence: float = Field(..., description="Confidence 0-100", ge=0, le=100)
    source_ip: Optional[str] = Field(default=None, description="Source IP")
    related_log_ids: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Ids of contributing events",
    )
    related_alert_ids: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Ids of contributing alerts",
    )
    affected_assets: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Assets touched by the activity",
    )
    attack_vector: Optional[str] = Field(default=None, description="Attack vector")
    correlation_id: Optional[str] = Field(
        default=None,
        description="Stable id for composite findings",
    )
    rule_name: str = Field(..., description="Producing rule name")
    window: timedelta = Field(..., description="Producing rule window")

    @property
    def is_correlation(self) -> bool:
        """Check if this candidate came from a correlation rule."""
        return self.correlation_id is not None

    @property
    def dedup_key(self) -> str:
        """Correlation id for composites, type:ip for detections."""
        if self.correlation_id is not None:
            return self.correlation_id
        return build_dedup_key(self.alert_type, self.source_ip)


class Alert(BaseModel):
    """
    Persisted security finding.

    Represents a finding with its evidence, lifecycle state, audit timeline
    and notification history.

    Attributes:
        alert_id: Unique identifier.
        title: Alert title.
        description: Alert description.
        severity: Current severity.
        alert_type: Attack category.
        status: Lifecycle status.
        source_ip: Source IP the finding is about.
        affected_assets: Assets touched by the activity.
        confidence: Confidence from 0 to 100.
        risk_score: Derived, min(10, weight(severity) * confidence / 100).
        related_log_ids: Ids of contributing events.
        related_alert_ids: Ids of contributing alerts.
        correlation_id: Stable id for composite findings.
        detection_method: How the finding was produced.
        attack_vector: Short attack vector description.
        rule_name: Name of the producing rule.
        created_at: Creation time.
        updated_at: Last mutation time.
        assigned_to: Analyst the alert is assigned to.
        resolved_at: When the alert reached a terminal status.
        resolved_by: Who closed the alert.
        resolution_notes: Closing notes.
        timeline: Ordered audit trail.
        notifications: Notification intents enqueued so far.
        version: Optimistic concurrency token, owned by the repository.

    Example:
        >>> alert = Alert.from_candidate(candidate)
        >>> alert.risk_score
        7.2
    """

    model_config = {"extra": "forbid"}

    alert_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier",
    )
    title: str = Field(..., description="Alert title")
    description: str = Field(default="", description="Alert description")
    severity: AlertSeverity = Field(..., description="Current severity")
    alert_type: AlertType = Field(..., description="Attack category")
    status: AlertStatus = Field(
        default=AlertStatus.ACTIVE,
        description="Lifecycle status",
    )
    source_ip: Optional[str] = Field(default=None, description="Source IP")
    affected_assets: Set[str] = Field(
        default_factory=set,
        description="Assets touched by the activity",
    )
    confidence: float = Field(..., description="Confidence 0-100", ge=0, le=100)
    related_log_ids: Set[str] = Field(
        default_factory=set,
        description="Ids of contributing events",
    )
    related_alert_ids: Set[str] = Field(
        default_factory=set,
        description="Ids of contributing alerts",
    )
    correlation_id: Optional[str] = Field(
        default=None,
        description="Stable id for composite findings",
    )
    detection_method: DetectionMethod = Field(
        ...,
        description="How the finding was produced",
    )
    attack_vector: Optional[str] = Field(default=None, description="Attack vector")
    rule_name: Optional[str] = Field(default=None, description="Producing rule")

    # Lifecycle timestamps
    created_at: datetime = Field(default_factory=_utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=_utcnow, description="Last mutation")

    # Workflow
    assigned_to: Optional[str] = Field(default=None, description="Assigned analyst")
    resolved_at: Optional[datetime] = Field(default=None, description="Close time")
    resolved_by: Optional[str] = Field(default=None, description="Closed by")
    resolution_notes: Optional[str] = Field(default=None, description="Closing notes")

    timeline: List[TimelineEntry] = Field(
        default_factory=list,
        description="Ordered audit trail",
    )
    notifications: List[NotificationRecord] = Field(
        default_factory=list,
        description="Notification intents enqueued so far",
    )
    version: int = Field(
        default=0,
        description="Optimistic concurrency token",
        ge=0,
    )

    @field_validator("created_at", "updated_at", "resolved_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @computed_field  # type: ignore[prop-decorator]
    @property
    def risk_score(self) -> float:
        """Risk score from 0 to 10."""
        return min(10.0, self.severity.weight * self.confidence / 100)

    @property
    def is_open(self) -> bool:
        """Check if the alert is active or under investigation."""
        return self.status.is_open

    @property
    def dedup_key(self) -> str:
        """Key under which later findings merge into this alert."""
        if self.correlation_id is not None:
            return self.correlation_id
        return build_dedup_key(self.alert_type, self.source_ip)

    @property
    def notified_channels(self) -> Set[str]:
        """Every channel named in an enqueued notification."""
        channels: Set[str] = set()
        for record in self.notifications:
            channels.update(record.channels)
        return channels

    def has_notified(self, channels: Iterable[str]) -> bool:
        """
        Check if every given channel has already been notified.

        Args:
            channels: Channels to check.

        Returns:
            bool: True if all channels appear in earlier notifications.
        """
        return set(channels).issubset(self.notified_channels)

    @classmethod
    def from_candidate(
        cls,
        candidate: AlertCandidate,
        timestamp: Optional[datetime] = None,
    ) -> "Alert":
        """
        Build a new active alert from a rule candidate.

        Args:
            candidate: The rule output.
            timestamp: Creation time, defaults to now.

        Returns:
            Alert: New alert with a "created" timeline entry.
        """
        now = timestamp or _utcnow()
        return cls(
            title=candidate.title,
            description=candidate.description,
            severity=candidate.severity,
            alert_type=candidate.alert_type,
            source_ip=candidate.source_ip,
            affected_assets=set(candidate.affected_assets),
            confidence=candidate.confidence,
            related_log_ids=set(candidate.related_log_ids),
            related_alert_ids=set(candidate.related_alert_ids),
            correlation_id=candidate.correlation_id,
            detection_method=candidate.detection_method,
            attack_vector=candidate.attack_vector,
            rule_name=candidate.rule_name,
            created_at=now,
            updated_at=now,
            timeline=[
                TimelineEntry(
                    timestamp=now,
                    event="created",
                    detail=f"Created by rule {candidate.rule_name}",
                )
            ],
        )

    def _with_entry(
        self,
        update: Dict[str, object],
        entry: TimelineEntry,
    ) -> "Alert":
        update["timeline"] = [*self.timeline, entry]
        update["updated_at"] = entry.timestamp
        return self.model_copy(update=update)

    def merge(
        self,
        candidate: AlertCandidate,
        timestamp: Optional[datetime] = None,
    ) -> "Alert":
        """
        Fold a later finding into this alert.

        Confidence becomes the max of both, evidence and assets are unioned,
        severity is raised if the candidate is more severe.

        Args:
            candidate: The later rule output with the same dedup key.
            timestamp: Merge time, defaults to now.

        Returns:
            Alert: Updated alert with a "merged" timeline entry.
        """
        now = timestamp or _utcnow()
        new_logs = set(candidate.related_log_ids) - self.related_log_ids
        return self._with_entry(
            {
                "confidence": max(self.confidence, candidate.confidence),
                "severity": AlertSeverity.max(self.severity, candidate.severity),
                "related_log_ids": self.related_log_ids | set(candidate.related_log_ids),
                "related_alert_ids": self.related_alert_ids
                | set(candidate.related_alert_ids),
                "affected_assets": self.affected_assets | set(candidate.affected_assets),
            },
            TimelineEntry(
                timestamp=now,
                event="merged",
                detail=(
                    f"Merged finding from {candidate.rule_name}: "
                    f"{len(new_logs)} new related logs, "
                    f"confidence {candidate.confidence:g}"
                ),
            ),
        )

    def transition(
        self,
        new_status: AlertStatus,
        actor: str = DEFAULT_ACTOR,
        notes: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Alert":
        """
        Move the alert to a new lifecycle status.

        Args:
            new_status: Target status.
            actor: Who made the change.
            notes: Optional notes, stored as resolution notes when closing.
            timestamp: Change time, defaults to now.

        Returns:
            Alert: Updated alert with a "status_changed" timeline entry.

        Raises:
            InvalidTransitionError: If the lifecycle forbids the change.
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.alert_id, self.status, new_status)

        now = timestamp or _utcnow()
        update: Dict[str, object] = {"status": new_status}
        if new_status.is_terminal:
            update["resolved_at"] = now
            update["resolved_by"] = actor
            update["resolution_notes"] = notes

        detail = f"{self.status.value} -> {new_status.value}"
        if notes:
            detail = f"{detail}: {notes}"
        return self._with_entry(
            update,
            TimelineEntry(timestamp=now, event="status_changed", detail=detail, actor=actor),
        )

    def assign(
        self,
        assignee: str,
        actor: str = DEFAULT_ACTOR,
        timestamp: Optional[datetime] = None,
    ) -> "Alert":
        """
        Assign the alert to an analyst.

        Args:
            assignee: Analyst to assign.
            actor: Who made the assignment.
            timestamp: Assignment time, defaults to now.

        Returns:
            Alert: Updated alert with an "assigned" timeline entry.
        """
        now = timestamp or _utcnow()
        return self._with_entry(
            {"assigned_to": assignee},
            TimelineEntry(
                timestamp=now,
                event="assigned",
                detail=f"Assigned to {assignee}",
                actor=actor,
            ),
        )

    def record_notification(
        self,
        channels: Iterable[str],
        reason: str,
        timestamp: Optional[datetime] = None,
        event: str = "notification_queued",
    ) -> "Alert":
        """
        Record an enqueued notification intent.

        Args:
            channels: Channels named in the intent.
            reason: Why the intent was enqueued.
            timestamp: Enqueue time, defaults to now.
            event: Timeline event name.

        Returns:
            Alert: Updated alert with the notification and a timeline entry.
        """
        now = timestamp or _utcnow()
        channel_list = sorted(set(channels))
        return self._with_entry(
            {
                "notifications": [
                    *self.notifications,
                    NotificationRecord(channels=channel_list, reason=reason, queued_at=now),
                ]
            },
            TimelineEntry(
                timestamp=now,
                event=event,
                detail=f"{reason} via {', '.join(channel_list)}",
            ),
        )
