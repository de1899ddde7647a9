"""
Cross-signal correlation rules.

This module provides the closed set of correlation rules evaluated by the
CorrelationEngine. Each rule looks at a window of events and alerts and
returns composite AlertCandidates identified by a stable correlation id,
so re-evaluating the same activity merges into the same alert.

Rules:
    AttackChainRule: Kill-chain stage progression per source IP
    CoordinatedAttackRule: Same-type alerts from many IPs in one time bucket
    LateralMovementRule: One (user, IP) pair reaching many systems
    DataBreachRule: Data movement volume or frequency per source IP

Correlation ids:
    CHAIN-<earliestMs>-<ip>, COORD-<bucketMs>-<type>,
    LATERAL-<earliestMs>-<user>-<ip>, BREACH-<earliestMs>-<ip>

    While an alert for the same IP (or user and IP) is still open, chain,
    lateral and breach findings keep its id instead of minting a new one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from siem_engine.config.models import (
    AttackChainSettings,
    CoordinatedAttackSettings,
    CorrelationConfig,
    DataBreachSettings,
    LateralMovementSettings,
    RuleSettings,
)
from siem_engine.models.alerts import (
    Alert,
    AlertCandidate,
    AlertSeverity,
    AlertType,
    DetectionMethod,
)
from siem_engine.models.events import EventCategory, LogEvent
from siem_engine.stats.windows import epoch_millis, sanitize_ip, time_bucket, window_start

logger = structlog.get_logger(__name__)


# Ordered stage vocabulary; an item takes the first stage whose keyword it contains
ATTACK_STAGES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("reconnaissance", ("scan", "probe")),
    ("initial_access", ("login", "access")),
    ("privilege_escalation", ("privilege", "escalat")),
    ("lateral_movement", ("lateral", "movement")),
    ("data_exfiltration", ("data", "exfiltrat")),
)

BREACH_ASSETS = frozenset({"Database", "File System"})


def classify_stage(text: str) -> Optional[str]:
    """
    Classify text into an attack stage by first keyword match.

    Args:
        text: Event message or alert title.

    Returns:
        Optional[str]: Stage name, or None if no keyword matches.

    Example:
        >>> classify_stage("Port scan from 198.51.100.7")
        'reconnaissance'
    """
    lowered = text.lower()
    for stage, keywords in ATTACK_STAGES:
        if any(keyword in lowered for keyword in keywords):
            return stage
    return None


def correlation_severity(confidence: float, asset_count: int) -> AlertSeverity:
    """
    Map a composite finding's confidence and reach to a severity.

    Args:
        confidence: Confidence from 0 to 100.
        asset_count: Number of distinct affected assets.

    Returns:
        AlertSeverity: critical, high, medium or low.
    """
    if confidence >= 80 and asset_count >= 3:
        return AlertSeverity.CRITICAL
    if confidence >= 70 or asset_count >= 2:
        return AlertSeverity.HIGH
    if confidence >= 60:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def extract_affected_assets(
    events: Iterable[LogEvent],
    alerts: Iterable[Alert] = (),
) -> Set[str]:
    """Union of event sources and alert affected assets."""
    assets: Set[str] = {event.source for event in events}
    for alert in alerts:
        assets.update(alert.affected_assets)
    return assets


@dataclass
class _Group:
    """Events and alerts collected under one grouping key."""

    events: List[LogEvent] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)

    @property
    def earliest(self) -> datetime:
        stamps = [e.timestamp for e in self.events] + [a.created_at for a in self.alerts]
        return min(stamps)


class CorrelationRule(ABC):
    """
    Base class for cross-signal correlation rules.

    Attributes:
        name: Rule name, also the config key.
        alert_type: Alert type of produced candidates.
        prefix: Correlation id prefix.
        enabled: Whether the engine evaluates this rule (toggled in place).
        window: Lookback window; items older than now - window are ignored.
    """

    name: str = ""
    alert_type: AlertType = AlertType.OTHER
    prefix: str = ""

    def __init__(self, settings: RuleSettings) -> None:
        self.settings = settings
        self.enabled = settings.enabled
        self.window: timedelta = settings.window

    @abstractmethod
    def evaluate(
        self,
        events: Sequence[LogEvent],
        alerts: Sequence[Alert],
        now: datetime,
    ) -> List[AlertCandidate]:
        """
        Evaluate a window of events and alerts.

        Args:
            events: Events fetched for the engine's widest window.
            alerts: Alerts fetched for the engine's widest window.
            now: Cycle reference time.

        Returns:
            List[AlertCandidate]: Composite candidates.
        """
        pass

    def in_window(
        self,
        events: Sequence[LogEvent],
        alerts: Sequence[Alert],
        now: datetime,
    ) -> Tuple[List[LogEvent], List[Alert]]:
        """Keep only the items inside this rule's own window."""
        since = window_start(now, self.window)
        return (
            [e for e in events if e.timestamp >= since],
            [a for a in alerts if a.created_at >= since],
        )

    def correlation_id(self, timestamp: datetime, *parts: str) -> str:
        """Build a stable correlation id."""
        return "-".join([self.prefix, str(epoch_millis(timestamp)), *parts])

    def open_correlation_id(self, alerts: Sequence[Alert], *parts: str) -> Optional[str]:
        """
        Correlation id of the newest open alert this rule raised for a grouping key.

        Ongoing activity keeps merging into that alert after the item that
        named it has slid out of the window.

        Args:
            alerts: Alerts visible to the cycle, composites included.
            *parts: Grouping key parts as they appear in the id.

        Returns:
            Optional[str]: The open alert's correlation id, or None.
        """
        key = "-".join(parts)
        owned = [
            alert
            for alert in alerts
            if alert.alert_type == self.alert_type
            and alert.is_open
            and alert.correlation_id
            and alert.correlation_id.startswith(f"{self.prefix}-")
            and alert.correlation_id.split("-", 2)[-1] == key
        ]
        if not owned:
            return None
        return max(owned, key=lambda alert: alert.created_at).correlation_id

    def stable_correlation_id(
        self,
        alerts: Sequence[Alert],
        earliest: datetime,
        *parts: str,
    ) -> str:
        """Reuse the open alert's id for this key, or mint one from the earliest item."""
        return self.open_correlation_id(alerts, *parts) or self.correlation_id(earliest, *parts)

    def describe(self) -> Dict[str, object]:
        """Rule status for engine status reports."""
        return {
            "name": self.name,
            "type": self.alert_type.value,
            "enabled": self.enabled,
            "window_seconds": int(self.window.total_seconds()),
        }

    def _candidate(
        self,
        title: str,
        description: str,
        confidence: float,
        correlation_id: str,
        source_ip: Optional[str],
        events: Sequence[LogEvent],
        alerts: Sequence[Alert],
        attack_vector: str,
        affected_assets: Optional[FrozenSet[str]] = None,
    ) -> AlertCandidate:
        assets = (
            affected_assets
            if affected_assets is not None
            else frozenset(extract_affected_assets(events, alerts))
        )
        severity = correlation_severity(confidence, len(assets))
        logger.debug(
            "correlation_candidate",
            rule=self.name,
            correlation_id=correlation_id,
            confidence=confidence,
            severity=severity.value,
        )
        return AlertCandidate(
            title=title,
            description=description,
            alert_type=self.alert_type,
            severity=severity,
            detection_method=DetectionMethod.CORRELATION,
            confidence=confidence,
            source_ip=source_ip,
            related_log_ids=frozenset(e.id for e in events),
            related_alert_ids=frozenset(a.alert_id for a in alerts),
            affected_assets=assets,
            attack_vector=attack_vector,
            correlation_id=correlation_id,
            rule_name=self.name,
            window=self.window,
        )


def _signal_alerts(alerts: Iterable[Alert]) -> List[Alert]:
    """Alerts produced by detection rules (composites excluded)."""
    return [a for a in alerts if a.detection_method != DetectionMethod.CORRELATION]


class AttackChainRule(CorrelationRule):
    """
    Kill-chain progression per source IP.

    Events and detection alerts from one IP are walked in time order and
    classified into stages; each stage counts once. Enough distinct stages
    make an attack chain.

    Formula:
        confidence = min(max_confidence, base_confidence + step * stages)
    """

    name = "attack_chain"
    alert_type = AlertType.ATTACK_CHAIN
    prefix = "CHAIN"

    def __init__(self, settings: AttackChainSettings) -> None:
        super().__init__(settings)
        self.settings: AttackChainSettings = settings

    def evaluate(self, events, alerts, now):
        window_events, window_alerts = self.in_window(events, alerts, now)

        groups: Dict[str, _Group] = {}
        for event in window_events:
            if event.source_ip:
                groups.setdefault(event.source_ip, _Group()).events.append(event)
        for alert in _signal_alerts(window_alerts):
            if alert.source_ip:
                groups.setdefault(alert.source_ip, _Group()).alerts.append(alert)

        candidates: List[AlertCandidate] = []
        for ip, group in groups.items():
            timeline: List[Tuple[datetime, str, object]] = [
                (e.timestamp, e.message, e) for e in group.events
            ] + [(a.created_at, a.title, a) for a in group.alerts]
            timeline.sort(key=lambda item: item[0])

            stages: List[str] = []
            staged = _Group()
            for _, text, item in timeline:
                stage = classify_stage(text)
                if stage is None:
                    continue
                if isinstance(item, LogEvent):
                    staged.events.append(item)
                else:
                    staged.alerts.append(item)  # type: ignore[arg-type]
                if stage not in stages:
                    stages.append(stage)

            if len(stages) < self.settings.min_stages:
                continue

            confidence = min(
                self.settings.max_confidence,
                self.settings.base_confidence + self.settings.confidence_step * len(stages),
            )
            candidates.append(
                self._candidate(
                    title="Multi-Stage Attack Chain Detected",
                    description=f"Attack progression from {ip}: {' -> '.join(stages)}",
                    confidence=confidence,
                    correlation_id=self.stable_correlation_id(
                        alerts, staged.earliest, sanitize_ip(ip)
                    ),
                    source_ip=ip,
                    events=staged.events,
                    alerts=staged.alerts,
                    attack_vector="Multi-stage attack",
                )
            )
        return candidates


class CoordinatedAttackRule(CorrelationRule):
    """
    Same-type detection alerts from many source IPs in one time bucket.

    Formula:
        confidence = min(max_confidence, base_confidence + step * distinct_ips)
    """

    name = "coordinated_attack"
    alert_type = AlertType.COORDINATED_ATTACK
    prefix = "COORD"

    def __init__(self, settings: CoordinatedAttackSettings) -> None:
        super().__init__(settings)
        self.settings: CoordinatedAttackSettings = settings
        self.bucket = timedelta(seconds=settings.bucket_seconds)

    def evaluate(self, events, alerts, now):
        _, alerts = self.in_window(events, alerts, now)

        buckets: Dict[Tuple[AlertType, datetime], List[Alert]] = {}
        for alert in _signal_alerts(alerts):
            if not alert.source_ip:
                continue
            key = (alert.alert_type, time_bucket(alert.created_at, self.bucket))
            buckets.setdefault(key, []).append(alert)

        candidates: List[AlertCandidate] = []
        for (alert_type, bucket_start), members in buckets.items():
            ips = sorted({a.source_ip for a in members if a.source_ip})
            if len(ips) < self.settings.min_ips:
                continue

            confidence = min(
                self.settings.max_confidence,
                self.settings.base_confidence + self.settings.confidence_step * len(ips),
            )
            minutes = int(self.bucket.total_seconds() // 60)
            candidates.append(
                self._candidate(
                    title="Coordinated Attack Detected",
                    description=(
                        f"{len(ips)} source IPs launched {alert_type.value} attacks "
                        f"within {minutes} minutes: {', '.join(ips)}"
                    ),
                    confidence=confidence,
                    correlation_id=self.correlation_id(bucket_start, alert_type.value),
                    source_ip=None,
                    events=[],
                    alerts=members,
                    attack_vector=f"Coordinated {alert_type.value}",
                )
            )
        return candidates


class LateralMovementRule(CorrelationRule):
    """
    One (user, source IP) pair authenticating to many systems.

    Formula:
        confidence = min(max_confidence, base_confidence + step * systems)
    """

    name = "lateral_movement"
    alert_type = AlertType.LATERAL_MOVEMENT
    prefix = "LATERAL"

    def __init__(self, settings: LateralMovementSettings) -> None:
        super().__init__(settings)
        self.settings: LateralMovementSettings = settings

    def evaluate(self, events, alerts, now):
        events, _ = self.in_window(events, alerts, now)

        groups: Dict[Tuple[str, str], List[LogEvent]] = {}
        for event in events:
            user = event.user
            if event.category != EventCategory.SECURITY or not event.source_ip or not user:
                continue
            groups.setdefault((user, event.source_ip), []).append(event)

        candidates: List[AlertCandidate] = []
        for (user, ip), members in groups.items():
            systems: List[str] = []
            for event in sorted(members, key=lambda e: e.timestamp):
                if event.source not in systems:
                    systems.append(event.source)
            if len(systems) < self.settings.min_systems:
                continue

            confidence = min(
                self.settings.max_confidence,
                self.settings.base_confidence + self.settings.confidence_step * len(systems),
            )
            earliest = min(e.timestamp for e in members)
            candidates.append(
                self._candidate(
                    title="Lateral Movement Detected",
                    description=(
                        f"User {user} from {ip} accessed {len(systems)} systems: "
                        f"{', '.join(systems)}"
                    ),
                    confidence=confidence,
                    correlation_id=self.stable_correlation_id(
                        alerts, earliest, sanitize_ip(user), sanitize_ip(ip)
                    ),
                    source_ip=ip,
                    events=members,
                    alerts=[],
                    attack_vector="Lateral movement",
                )
            )
        return candidates


class DataBreachRule(CorrelationRule):
    """
    Data movement per source IP, flagged by volume or frequency.

    Confidence is confidence_both when both the volume and the event count
    thresholds hold, otherwise confidence_either.
    """

    name = "data_breach"
    alert_type = AlertType.DATA_BREACH
    prefix = "BREACH"

    def __init__(self, settings: DataBreachSettings) -> None:
        super().__init__(settings)
        self.settings: DataBreachSettings = settings
        self.keywords = [k.lower() for k in settings.keywords]

    def is_data_movement(self, event: LogEvent) -> bool:
        """Check if an event message mentions data movement."""
        message = event.message.lower()
        return any(keyword in message for keyword in self.keywords)

    def evaluate(self, events, alerts, now):
        events, _ = self.in_window(events, alerts, now)

        groups: Dict[str, List[LogEvent]] = {}
        for event in events:
            if event.source_ip and self.is_data_movement(event):
                groups.setdefault(event.source_ip, []).append(event)

        candidates: List[AlertCandidate] = []
        for ip, members in groups.items():
            volume = sum(e.transfer_size for e in members)
            high_volume = volume > self.settings.volume_bytes
            high_frequency = len(members) >= self.settings.min_events
            if not (high_volume or high_frequency):
                continue

            confidence = (
                self.settings.confidence_both
                if high_volume and high_frequency
                else self.settings.confidence_either
            )
            earliest = min(e.timestamp for e in members)
            candidates.append(
                self._candidate(
                    title="Potential Data Breach",
                    description=(
                        f"{len(members)} data access events from {ip} "
                        f"totalling {volume / (1024 * 1024):.1f} MB"
                    ),
                    confidence=confidence,
                    correlation_id=self.stable_correlation_id(alerts, earliest, sanitize_ip(ip)),
                    source_ip=ip,
                    events=members,
                    alerts=[],
                    attack_vector="Data breach",
                    affected_assets=BREACH_ASSETS,
                )
            )
        return candidates


def build_correlation_rules(config: CorrelationConfig) -> List[CorrelationRule]:
    """
    Build the ordered correlation rule set from configuration.

    Args:
        config: Correlation configuration.

    Returns:
        List[CorrelationRule]: Rules in evaluation order.
    """
    return [
        AttackChainRule(config.attack_chain),
        CoordinatedAttackRule(config.coordinated_attack),
        LateralMovementRule(config.lateral_movement),
        DataBreachRule(config.data_breach),
    ]
