"""
Single-signal detection rules.

This module provides the closed set of detection rules evaluated by the
DetectionEngine. Each rule looks at one batch of LogEvents and returns
AlertCandidates; rules never touch the repository.

Rules:
    BruteForceRule: Failed authentication bursts per source IP
    InjectionRule: SQL injection signatures in application/database events
    AnomalousVolumeRule: Per-IP request volume far above the batch baseline
    PrivilegeEscalationRule: Elevated-access signatures in system/security events
    DataExfiltrationRule: Cumulative transfer volume per source IP

Example:
    >>> rules = build_detection_rules(DetectionConfig())
    >>> [rule.name for rule in rules]
    ['brute_force', 'sql_injection', 'anomaly', 'privilege_escalation', 'data_exfiltration']
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Pattern, Sequence, Tuple

import structlog

from siem_engine.config.models import (
    AnomalySettings,
    BruteForceSettings,
    DetectionConfig,
    ExfiltrationSettings,
    InjectionSettings,
    PrivilegeEscalationSettings,
    RuleSettings,
)
from siem_engine.models.alerts import (
    AlertCandidate,
    AlertSeverity,
    AlertType,
    DetectionMethod,
)
from siem_engine.models.events import EventCategory, LogEvent
from siem_engine.stats.baseline import VolumeBaseline
from siem_engine.stats.windows import DEFAULT_MAX_KEYS, SlidingWindowTracker

logger = structlog.get_logger(__name__)


# Ordered, first hit wins
SQL_INJECTION_PATTERNS: Tuple[str, ...] = (
    r"union\s+select",
    r"or\s+1\s*=\s*1",
    r"drop\s+table",
    r"insert\s+into",
    r"delete\s+from",
    r"update\s+.*\s+set",
    r"exec\s*\(",
    r"script\s*>",
)

PRIVILEGE_ESCALATION_PATTERNS: Tuple[str, ...] = (
    r"sudo\s+su",
    r"chmod\s+777",
    r"chown\s+root",
    r"privilege.*escalat",
    r"admin.*access",
    r"root.*shell",
)


class RuleEvaluationError(Exception):
    """
    Raised when a rule fails while evaluating a batch.

    Attributes:
        rule_name: Name of the failing rule.
        cause: Original exception.
    """

    def __init__(self, rule_name: str, cause: Exception):
        self.rule_name = rule_name
        self.cause = cause
        super().__init__(f"Rule {rule_name} failed: {cause}")


def evaluate_rule(rule: Any, *args: Any) -> List[AlertCandidate]:
    """
    Run one rule's evaluate(), wrapping any failure.

    Shared by the detection and correlation engines.

    Args:
        rule: A detection or correlation rule.
        *args: Arguments forwarded to rule.evaluate.

    Returns:
        List[AlertCandidate]: The rule's candidates.

    Raises:
        RuleEvaluationError: If the rule raised.
    """
    try:
        return list(rule.evaluate(*args))
    except Exception as e:
        raise RuleEvaluationError(rule.name, e) from e


def compile_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    """Compile case-insensitive signature patterns, preserving order."""
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def first_match(patterns: Sequence[Pattern[str]], text: str) -> Optional[Pattern[str]]:
    """
    Return the first pattern that matches text.

    Args:
        patterns: Ordered compiled patterns.
        text: Text to scan.

    Returns:
        Optional[Pattern]: First matching pattern, or None.
    """
    for pattern in patterns:
        if pattern.search(text):
            return pattern
    return None


class DetectionRule(ABC):
    """
    Base class for single-signal detection rules.

    Attributes:
        name: Rule name, also the config key.
        alert_type: Alert type of produced candidates.
        severity: Severity of produced candidates.
        detection_method: Detection method of produced candidates.
        enabled: Whether the engine evaluates this rule (toggled in place).
        window: Rule window; bounds dedup lookups for its candidates.
    """

    name: str = ""
    alert_type: AlertType = AlertType.OTHER
    severity: AlertSeverity = AlertSeverity.MEDIUM
    detection_method: DetectionMethod = DetectionMethod.SIGNATURE

    def __init__(self, settings: RuleSettings) -> None:
        self.settings = settings
        self.enabled = settings.enabled
        self.window: timedelta = settings.window

    @abstractmethod
    def evaluate(self, events: Sequence[LogEvent], now: datetime) -> List[AlertCandidate]:
        """
        Evaluate one batch of events.

        Args:
            events: Unprocessed events of the current batch.
            now: Cycle reference time.

        Returns:
            List[AlertCandidate]: Candidates found in the batch.
        """
        pass

    def sweep(self, now: datetime) -> int:
        """Drop expired state kept between cycles. Returns entries removed."""
        return 0

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
        source_ip: Optional[str],
        related_log_ids: Iterable[str],
        affected_assets: FrozenSet[str],
        attack_vector: str,
    ) -> AlertCandidate:
        logger.debug(
            "detection_candidate",
            rule=self.name,
            source_ip=source_ip,
            confidence=confidence,
        )
        return AlertCandidate(
            title=title,
            description=description,
            alert_type=self.alert_type,
            severity=self.severity,
            detection_method=self.detection_method,
            confidence=confidence,
            source_ip=source_ip,
            related_log_ids=frozenset(related_log_ids),
            affected_assets=affected_assets,
            attack_vector=attack_vector,
            rule_name=self.name,
            window=self.window,
        )


class BruteForceRule(DetectionRule):
    """
    Failed authentication bursts per source IP.

    Failed attempts are remembered across cycles in a SlidingWindowTracker,
    so a burst split over two batches still counts as one burst. The rule
    fires only for IPs that had new attempts in the current batch.

    Formula:
        confidence = min(max_confidence, base_confidence + step * attempts)
    """

    name = "brute_force"
    alert_type = AlertType.BRUTE_FORCE
    severity = AlertSeverity.HIGH

    AFFECTED_ASSETS = frozenset({"Authentication System"})

    def __init__(
        self,
        settings: BruteForceSettings,
        max_tracked_keys: int = DEFAULT_MAX_KEYS,
    ) -> None:
        super().__init__(settings)
        self.settings: BruteForceSettings = settings
        self.tracker = SlidingWindowTracker(window=self.window, max_keys=max_tracked_keys)

    def is_failed_login(self, event: LogEvent) -> bool:
        """Check if an event is a failed authentication with a source IP."""
        if event.category != EventCategory.SECURITY or not event.source_ip:
            return False
        message = event.message.lower()
        return any(indicator in message for indicator in self.settings.failure_indicators)

    def evaluate(self, events: Sequence[LogEvent], now: datetime) -> List[AlertCandidate]:
        touched: List[str] = []
        for event in events:
            if not self.is_failed_login(event):
                continue
            ip = event.source_ip or ""
            self.tracker.record(ip, event.id, event.timestamp)
            if ip not in touched:
                touched.append(ip)

        candidates: List[AlertCandidate] = []
        for ip in touched:
            attempt_ids = self.tracker.items(ip, now)
            attempts = len(attempt_ids)
            if attempts < self.settings.attempts:
                continue

            confidence = min(
                self.settings.max_confidence,
                self.settings.base_confidence + self.settings.confidence_step * attempts,
            )
            candidates.append(
                self._candidate(
                    title="Brute Force Attack Detected",
                    description=f"{attempts} failed login attempts from {ip}",
                    confidence=confidence,
                    source_ip=ip,
                    related_log_ids=attempt_ids,
                    affected_assets=self.AFFECTED_ASSETS,
                    attack_vector="Authentication brute force",
                )
            )
        return candidates

    def sweep(self, now: datetime) -> int:
        return self.tracker.sweep(now)

    def describe(self) -> Dict[str, object]:
        status = super().describe()
        status["attempts"] = self.settings.attempts
        status["tracked_ips"] = len(self.tracker)
        return status


class _SignatureRule(DetectionRule):
    """Per-event signature matching with a fixed confidence."""

    categories: FrozenSet[EventCategory] = frozenset()
    patterns: Tuple[str, ...] = ()
    title: str = ""
    attack_vector: str = ""
    affected_assets: FrozenSet[str] = frozenset()

    def __init__(self, settings: RuleSettings, confidence: float) -> None:
        super().__init__(settings)
        self.confidence = confidence
        self._compiled = compile_patterns(self.patterns)

    def _describe_match(self, pattern: Pattern[str]) -> str:
        return f"Pattern detected: {pattern.pattern}"

    def evaluate(self, events: Sequence[LogEvent], now: datetime) -> List[AlertCandidate]:
        candidates: List[AlertCandidate] = []
        for event in events:
            if event.category not in self.categories:
                continue
            pattern = first_match(self._compiled, event.message)
            if pattern is None:
                continue
            candidates.append(
                self._candidate(
                    title=self.title,
                    description=self._describe_match(pattern),
                    confidence=self.confidence,
                    source_ip=event.source_ip,
                    related_log_ids=[event.id],
                    affected_assets=self.affected_assets,
                    attack_vector=self.attack_vector,
                )
            )
        return candidates


class InjectionRule(_SignatureRule):
    """SQL injection signatures in application and database events."""

    name = "sql_injection"
    alert_type = AlertType.SQL_INJECTION
    severity = AlertSeverity.CRITICAL

    categories = frozenset({EventCategory.APPLICATION, EventCategory.DATABASE})
    patterns = SQL_INJECTION_PATTERNS
    title = "SQL Injection Attempt Detected"
    attack_vector = "SQL Injection"
    affected_assets = frozenset({"Database", "Web Application"})

    def __init__(self, settings: InjectionSettings) -> None:
        super().__init__(settings, confidence=settings.confidence)

    def _describe_match(self, pattern: Pattern[str]) -> str:
        return f"SQL injection pattern detected: {pattern.pattern}"


class PrivilegeEscalationRule(_SignatureRule):
    """Elevated-access signatures in system and security events."""

    name = "privilege_escalation"
    alert_type = AlertType.PRIVILEGE_ESCALATION
    severity = AlertSeverity.HIGH

    categories = frozenset({EventCategory.SYSTEM, EventCategory.SECURITY})
    patterns = PRIVILEGE_ESCALATION_PATTERNS
    title = "Privilege Escalation Attempt"
    attack_vector = "Privilege escalation"
    affected_assets = frozenset({"System"})

    def __init__(self, settings: PrivilegeEscalationSettings) -> None:
        super().__init__(settings, confidence=settings.confidence)

    def _describe_match(self, pattern: Pattern[str]) -> str:
        return f"Privilege escalation pattern detected: {pattern.pattern}"


class AnomalousVolumeRule(DetectionRule):
    """
    Per-IP request volume far above the batch baseline.

    Counts application events per source IP, then flags IPs above
    mean + k * std (population statistics) and above an absolute floor.

    Formula:
        confidence = min(max_confidence,
                         base_confidence + (count - threshold) / threshold * excess_weight)
    """

    name = "anomaly"
    alert_type = AlertType.ANOMALY
    severity = AlertSeverity.MEDIUM
    detection_method = DetectionMethod.ANOMALY

    AFFECTED_ASSETS = frozenset({"Web Application"})

    def __init__(self, settings: AnomalySettings) -> None:
        super().__init__(settings)
        self.settings: AnomalySettings = settings
        self.baseline = VolumeBaseline(
            multiplier=settings.stddev_multiplier,
            floor=settings.min_requests,
        )

    def evaluate(self, events: Sequence[LogEvent], now: datetime) -> List[AlertCandidate]:
        by_ip: Dict[str, List[str]] = {}
        for event in events:
            if event.category != EventCategory.APPLICATION or not event.source_ip:
                continue
            by_ip.setdefault(event.source_ip, []).append(event.id)

        counts = {ip: len(ids) for ip, ids in by_ip.items()}
        candidates: List[AlertCandidate] = []
        for ip, count, status in self.baseline.outliers(counts):
            excess = (count - status.threshold) / status.threshold if status.threshold > 0 else 1.0
            confidence = min(
                self.settings.max_confidence,
                self.settings.base_confidence + excess * self.settings.excess_weight,
            )
            candidates.append(
                self._candidate(
                    title="Anomalous Traffic Pattern",
                    description=(
                        f"Unusual request volume from {ip}: {count} requests "
                        f"(threshold: {status.threshold:.1f})"
                    ),
                    confidence=confidence,
                    source_ip=ip,
                    related_log_ids=by_ip[ip],
                    affected_assets=self.AFFECTED_ASSETS,
                    attack_vector="Traffic anomaly",
                )
            )
        return candidates


class DataExfiltrationRule(DetectionRule):
    """Cumulative details.size per source IP above a byte threshold."""

    name = "data_exfiltration"
    alert_type = AlertType.DATA_EXFILTRATION
    severity = AlertSeverity.CRITICAL

    AFFECTED_ASSETS = frozenset({"Data Storage", "Network"})

    def __init__(self, settings: ExfiltrationSettings) -> None:
        super().__init__(settings)
        self.settings: ExfiltrationSettings = settings

    def evaluate(self, events: Sequence[LogEvent], now: datetime) -> List[AlertCandidate]:
        totals: Dict[str, int] = {}
        ids: Dict[str, List[str]] = {}
        for event in events:
            size = event.transfer_size
            if not event.source_ip or size <= 0:
                continue
            totals[event.source_ip] = totals.get(event.source_ip, 0) + size
            ids.setdefault(event.source_ip, []).append(event.id)

        candidates: List[AlertCandidate] = []
        for ip, total in totals.items():
            if total <= self.settings.threshold_bytes:
                continue
            candidates.append(
                self._candidate(
                    title="Potential Data Exfiltration",
                    description=(
                        f"Large data transfer from {ip}: "
                        f"{total / (1024 * 1024):.1f} MB"
                    ),
                    confidence=self.settings.confidence,
                    source_ip=ip,
                    related_log_ids=ids[ip],
                    affected_assets=self.AFFECTED_ASSETS,
                    attack_vector="Data exfiltration",
                )
            )
        return candidates


def build_detection_rules(config: DetectionConfig) -> List[DetectionRule]:
    """
    Build the ordered detection rule set from configuration.

    Args:
        config: Detection configuration.

    Returns:
        List[DetectionRule]: Rules in evaluation order.
    """
    return [
        BruteForceRule(config.brute_force, max_tracked_keys=config.max_tracked_keys),
        InjectionRule(config.sql_injection),
        AnomalousVolumeRule(config.anomaly),
        PrivilegeEscalationRule(config.privilege_escalation),
        DataExfiltrationRule(config.data_exfiltration),
    ]
