"""
Correlation engine: periodic cross-signal evaluation.

The CorrelationEngine fetches events (processed or not) and alerts created
within the widest enabled rule window, lets each correlation rule look at
its own slice of that window, and materializes the composite candidates
through the shared AlertMaterializer.

Alerts marked false_positive are excluded from correlation input. Open
composite alerts of the enabled rules are fetched regardless of age so an
ongoing finding keeps its correlation id.

Example:
    >>> engine = create_correlation_engine(repository, materializer, config.correlation)
    >>> result = await engine.run_correlation_cycle()
    >>> result.candidates
    0
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog

from siem_engine.config.models import CorrelationConfig
from siem_engine.correlation.rules import CorrelationRule, build_correlation_rules
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.detection.rules import RuleEvaluationError, evaluate_rule
from siem_engine.interfaces.repository import AlertFilter, EventRepository, RepositoryError
from siem_engine.models.alerts import OPEN_STATUSES, Alert, AlertCandidate, AlertStatus
from siem_engine.models.cycles import CycleResult
from siem_engine.models.events import LogEvent
from siem_engine.stats.windows import utc_now, window_start

logger = structlog.get_logger(__name__)


CORRELATED_STATUSES = frozenset(
    {AlertStatus.ACTIVE, AlertStatus.INVESTIGATING, AlertStatus.RESOLVED}
)


class CorrelationEngine:
    """
    Runs correlation cycles over recent events and alerts.

    Attributes:
        repository: Event and alert store.
        materializer: Merge-or-create write path shared with detection.
        rules: Ordered correlation rules.
        last_cycle_at: Reference time of the last completed cycle.
    """

    def __init__(
        self,
        repository: EventRepository,
        materializer: AlertMaterializer,
        rules: Sequence[CorrelationRule],
    ) -> None:
        self.repository = repository
        self.materializer = materializer
        self.rules: List[CorrelationRule] = list(rules)
        self.last_cycle_at: Optional[datetime] = None
        self._cycle_lock = asyncio.Lock()

        logger.info(
            "correlation_engine_initialized",
            rules=[rule.name for rule in self.rules],
            max_window_seconds=self.max_window.total_seconds(),
        )

    @property
    def is_running(self) -> bool:
        """Check if a cycle is in progress."""
        return self._cycle_lock.locked()

    @property
    def max_window(self) -> timedelta:
        """Widest window across enabled rules (zero if none are enabled)."""
        windows = [rule.window for rule in self.rules if rule.enabled]
        return max(windows) if windows else timedelta(0)

    def get_rule(self, name: str) -> CorrelationRule:
        """
        Get a rule by name.

        Raises:
            KeyError: If no rule has that name.
        """
        for rule in self.rules:
            if rule.name == name:
                return rule
        raise KeyError(f"Unknown correlation rule: {name}")

    def set_rule_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable a rule in place."""
        rule = self.get_rule(name)
        rule.enabled = enabled
        logger.info("correlation_rule_toggled", rule=name, enabled=enabled)

    async def run_correlation_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one correlation cycle.

        Args:
            now: Cycle reference time (defaults to now).

        Returns:
            CycleResult: Cycle counters; skipped=True if a cycle was running.

        Raises:
            RepositoryError: If the repository fails.
        """
        if now is None:
            now = utc_now()

        if self._cycle_lock.locked():
            logger.warning("correlation_cycle_skipped", reason="already_running")
            return CycleResult(cycle="correlation", started_at=now, skipped=True)

        async with self._cycle_lock:
            return await self._run_cycle(now)

    async def _run_cycle(self, now: datetime) -> CycleResult:
        if not any(rule.enabled for rule in self.rules):
            logger.debug("correlation_cycle_no_rules")
            self.last_cycle_at = now
            return CycleResult(cycle="correlation", started_at=now)

        since = window_start(now, self.max_window)
        try:
            events = await self.repository.query_events(since)
            alerts = await self.repository.query_alerts(
                AlertFilter(statuses=CORRELATED_STATUSES, created_after=since)
            )
            alerts = alerts + await self._open_composites(alerts)
        except RepositoryError as e:
            logger.error("correlation_cycle_failed", stage="fetch", error=str(e))
            raise

        candidates, rule_errors = self._evaluate_rules(events, alerts, now)

        alert_ids: List[str] = []
        dropped = 0
        try:
            for candidate in candidates:
                alert = await self.materializer.materialize(candidate, now)
                if alert is None:
                    dropped += 1
                elif alert.alert_id not in alert_ids:
                    alert_ids.append(alert.alert_id)
        except RepositoryError as e:
            logger.error(
                "correlation_cycle_failed",
                stage="write",
                candidates=len(candidates),
                error=str(e),
            )
            raise

        self.last_cycle_at = now
        result = CycleResult(
            cycle="correlation",
            started_at=now,
            events_fetched=len(events),
            alerts_fetched=len(alerts),
            candidates=len(candidates),
            alert_ids=alert_ids,
            dropped=dropped,
            rule_errors=rule_errors,
        )
        logger.info(
            "correlation_cycle_completed",
            events=result.events_fetched,
            alerts=result.alerts_fetched,
            candidates=result.candidates,
            correlations=result.alerts_touched,
            rule_errors=rule_errors,
        )
        return result

    async def _open_composites(self, fetched: Sequence[Alert]) -> List[Alert]:
        """Open alerts of the enabled rules' types created before the fetch window."""
        known = {alert.alert_id for alert in fetched}
        composites: List[Alert] = []
        for alert_type in {rule.alert_type for rule in self.rules if rule.enabled}:
            found = await self.repository.query_alerts(
                AlertFilter(statuses=OPEN_STATUSES, alert_type=alert_type)
            )
            composites.extend(alert for alert in found if alert.alert_id not in known)
        return composites

    def _evaluate_rules(
        self,
        events: Sequence[LogEvent],
        alerts: Sequence[Alert],
        now: datetime,
    ) -> tuple[List[AlertCandidate], List[str]]:
        candidates: List[AlertCandidate] = []
        rule_errors: List[str] = []

        for rule in self.rules:
            if not rule.enabled:
                continue
            try:
                found = evaluate_rule(rule, events, alerts, now)
            except RuleEvaluationError as e:
                logger.error(
                    "rule_evaluation_failed",
                    rule=e.rule_name,
                    error=str(e.cause),
                    exc_info=e.cause,
                )
                rule_errors.append(e.rule_name)
                continue

            if found:
                logger.info("correlation_found", rule=rule.name, candidates=len(found))
            candidates.extend(found)
        return candidates, rule_errors

    def status(self) -> Dict[str, Any]:
        """Report engine status."""
        return {
            "running": self.is_running,
            "max_window_seconds": self.max_window.total_seconds(),
            "rules": [rule.describe() for rule in self.rules],
            "enabled_rules": sum(1 for rule in self.rules if rule.enabled),
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


def create_correlation_engine(
    repository: EventRepository,
    materializer: AlertMaterializer,
    config: Optional[CorrelationConfig] = None,
) -> CorrelationEngine:
    """
    Factory function to create a CorrelationEngine from configuration.

    Args:
        repository: Event and alert store.
        materializer: Shared merge-or-create write path.
        config: Correlation configuration (defaults if omitted).

    Returns:
        CorrelationEngine: Engine with the full rule set.
    """
    if config is None:
        config = CorrelationConfig()
    return CorrelationEngine(
        repository=repository,
        materializer=materializer,
        rules=build_correlation_rules(config),
    )
