"""
Escalation monitor and alert lifecycle.

This module provides the EscalationMonitor, which owns three things:

- The analyst-facing lifecycle API (transition, assign) over the
  active -> investigating -> resolved | false_positive state machine
- The escalation/cleanup cycle: active alerts older than their severity
  tier get one escalation intent per tier, then engine-owned bounded maps
  are swept
- Alert summaries over a period

Escalation is idempotent: an alert whose notifications already cover a
tier's channels is skipped on later scans.

Example:
    >>> monitor = EscalationMonitor(repository, dispatcher, config.escalation.tiers)
    >>> await monitor.transition(alert_id, AlertStatus.INVESTIGATING, actor="analyst")
    >>> result = await monitor.run_escalation_cycle()
    >>> result.escalated_count
    0
"""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import structlog

from siem_engine.config.models import EscalationTier, default_escalation_tiers
from siem_engine.detection.engine import DetectionEngine
from siem_engine.detection.materializer import MAX_WRITE_ATTEMPTS, AlertMaterializer
from siem_engine.interfaces.notifier import NotificationDispatcher
from siem_engine.interfaces.repository import (
    AlertFilter,
    AlertNotFoundError,
    AlertVersionConflict,
    EventRepository,
    RepositoryError,
)
from siem_engine.models.alerts import DEFAULT_ACTOR, Alert, AlertStatus
from siem_engine.models.cycles import AlertSummary, EscalationResult
from siem_engine.stats.windows import utc_now, window_start

logger = structlog.get_logger(__name__)


ESCALATION_EVENT = "escalated"

TOP_SOURCE_IPS = 5


def escalation_reason(tier: EscalationTier) -> str:
    """Reason string carried by a tier's notification intents."""
    return f"escalation:{tier.severity.value}"


class EscalationMonitor:
    """
    Lifecycle API plus the periodic escalation/cleanup cycle.

    Attributes:
        repository: Alert store.
        dispatcher: Notification intent sink.
        tiers: Escalation tiers, one per severity.
        materializer: Optional materializer whose key locks are swept.
        detection_engine: Optional engine whose trackers are swept.
    """

    def __init__(
        self,
        repository: EventRepository,
        dispatcher: NotificationDispatcher,
        tiers: Optional[Sequence[EscalationTier]] = None,
        materializer: Optional[AlertMaterializer] = None,
        detection_engine: Optional[DetectionEngine] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.tiers: List[EscalationTier] = (
            list(tiers) if tiers is not None else default_escalation_tiers()
        )
        self.materializer = materializer
        self.detection_engine = detection_engine
        self.last_cycle_at: Optional[datetime] = None
        self._cycle_lock = asyncio.Lock()

        logger.info(
            "escalation_monitor_initialized",
            tiers={tier.severity.value: tier.after_seconds for tier in self.tiers},
        )

    @property
    def is_running(self) -> bool:
        """Check if a cycle is in progress."""
        return self._cycle_lock.locked()

    async def _require_alert(self, alert_id: str) -> Alert:
        alert = await self.repository.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def transition(
        self,
        alert_id: str,
        new_status: AlertStatus,
        actor: str = DEFAULT_ACTOR,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Move an alert to a new lifecycle status.

        A concurrent write (e.g., a merge) is retried once on a fresh read.

        Args:
            alert_id: Alert to change.
            new_status: Target status.
            actor: Who made the change.
            notes: Optional notes; stored as resolution notes when closing.
            now: Change time (defaults to now).

        Returns:
            Alert: The stored alert.

        Raises:
            AlertNotFoundError: If the alert does not exist.
            InvalidTransitionError: If the lifecycle forbids the change.
            AlertVersionConflict: If the write keeps losing races.
        """
        if now is None:
            now = utc_now()

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            alert = await self._require_alert(alert_id)
            changed = alert.transition(new_status, actor=actor, notes=notes, timestamp=now)
            try:
                stored = await self.repository.update_alert(changed, expected_version=alert.version)
            except AlertVersionConflict:
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                continue

            logger.info(
                "alert_status_changed",
                alert_id=alert_id,
                from_status=alert.status.value,
                to_status=new_status.value,
                actor=actor,
            )
            return stored
        raise AlertNotFoundError(alert_id)

    async def assign(
        self,
        alert_id: str,
        assignee: str,
        actor: str = DEFAULT_ACTOR,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Assign an alert to an analyst.

        Raises:
            AlertNotFoundError: If the alert does not exist.
            AlertVersionConflict: If the write keeps losing races.
        """
        if now is None:
            now = utc_now()

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            alert = await self._require_alert(alert_id)
            try:
                stored = await self.repository.update_alert(
                    alert.assign(assignee, actor=actor, timestamp=now),
                    expected_version=alert.version,
                )
            except AlertVersionConflict:
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                continue

            logger.info("alert_assigned", alert_id=alert_id, assignee=assignee, actor=actor)
            return stored
        raise AlertNotFoundError(alert_id)

    async def run_escalation_cycle(self, now: Optional[datetime] = None) -> EscalationResult:
        """
        Escalate overdue active alerts, then sweep bounded state.

        Args:
            now: Cycle reference time (defaults to now).

        Returns:
            EscalationResult: Escalated ids per tier, failures and swept count.

        Raises:
            RepositoryError: If the alerts cannot be read.
        """
        if now is None:
            now = utc_now()

        if self._cycle_lock.locked():
            logger.warning("escalation_cycle_skipped", reason="already_running")
            return EscalationResult(started_at=now, skipped=True)

        async with self._cycle_lock:
            escalated: Dict[str, List[str]] = {}
            failed: List[str] = []

            for tier in self.tiers:
                try:
                    overdue = await self.repository.query_alerts(
                        AlertFilter(
                            statuses=frozenset({AlertStatus.ACTIVE}),
                            severity=tier.severity,
                            created_before=window_start(now, tier.after),
                        )
                    )
                except RepositoryError as e:
                    logger.error(
                        "escalation_cycle_failed",
                        tier=tier.severity.value,
                        error=str(e),
                    )
                    raise

                for alert in overdue:
                    if alert.has_notified(tier.channels):
                        continue
                    if await self._escalate(alert, tier, now):
                        escalated.setdefault(tier.severity.value, []).append(alert.alert_id)
                    else:
                        failed.append(alert.alert_id)

            swept = self.sweep(now)
            self.last_cycle_at = now

            result = EscalationResult(
                started_at=now,
                escalated=escalated,
                failed=failed,
                swept_keys=swept,
            )
            logger.info(
                "escalation_cycle_completed",
                escalated=result.escalated_count,
                failed=len(failed),
                swept_keys=swept,
            )
            return result

    async def _escalate(self, alert: Alert, tier: EscalationTier, now: datetime) -> bool:
        reason = escalation_reason(tier)
        try:
            await self.dispatcher.enqueue(alert.alert_id, tier.channels, reason)
        except Exception as e:
            logger.error(
                "notification_enqueue_failed",
                alert_id=alert.alert_id,
                channels=tier.channels,
                reason=reason,
                error=str(e),
            )
            return False

        recorded = alert.record_notification(
            tier.channels,
            reason,
            timestamp=now,
            event=ESCALATION_EVENT,
        )
        try:
            await self.repository.update_alert(recorded, expected_version=alert.version)
        except AlertVersionConflict as e:
            logger.warning("escalation_record_conflict", alert_id=alert.alert_id, error=str(e))
            return False

        logger.info(
            "alert_escalated",
            alert_id=alert.alert_id,
            severity=alert.severity.value,
            channels=tier.channels,
            age_seconds=(now - alert.created_at).total_seconds(),
        )
        return True

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Sweep the bounded maps of the attached components.

        Returns:
            int: Entries removed.
        """
        if now is None:
            now = utc_now()
        removed = 0
        if self.detection_engine is not None:
            removed += self.detection_engine.sweep(now)
        if self.materializer is not None:
            removed += self.materializer.sweep()
        return removed

    async def summarize(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> AlertSummary:
        """
        Summarize alerts created in a period.

        Args:
            since: Inclusive period start.
            until: Inclusive period end (defaults to now).

        Returns:
            AlertSummary: Counts per severity, type and status.

        Example:
            >>> summary = await monitor.summarize(since=now - timedelta(days=1))
            >>> summary.resolution_rate
            50.0
        """
        if until is None:
            until = utc_now()

        alerts = await self.repository.query_alerts(
            AlertFilter(created_after=since, created_before=until)
        )

        by_severity = Counter(alert.severity.value for alert in alerts)
        by_type = Counter(alert.alert_type.value for alert in alerts)
        by_status = Counter(alert.status.value for alert in alerts)
        ips = Counter(alert.source_ip for alert in alerts if alert.source_ip)
        resolved = sum(1 for alert in alerts if alert.status.is_terminal)
        total = len(alerts)

        return AlertSummary(
            since=since,
            until=until,
            total=total,
            by_severity=dict(by_severity),
            by_type=dict(by_type),
            by_status=dict(by_status),
            resolved=resolved,
            resolution_rate=(resolved / total * 100) if total else 0.0,
            top_source_ips=[ip for ip, _ in ips.most_common(TOP_SOURCE_IPS)],
        )


def create_escalation_monitor(
    repository: EventRepository,
    dispatcher: NotificationDispatcher,
    tiers: Optional[Sequence[EscalationTier]] = None,
    materializer: Optional[AlertMaterializer] = None,
    detection_engine: Optional[DetectionEngine] = None,
) -> EscalationMonitor:
    """Factory function to create an EscalationMonitor."""
    return EscalationMonitor(
        repository=repository,
        dispatcher=dispatcher,
        tiers=tiers,
        materializer=materializer,
        detection_engine=detection_engine,
    )
