"""
Detection engine: periodic single-signal evaluation.

This module provides the DetectionEngine, whose run_detection_cycle pulls
the unprocessed events of a bounded window, evaluates every enabled
detection rule over them, materializes the resulting candidates and
finally marks the batch processed.

Failure handling:
    - A rule that raises is logged (rule_evaluation_failed) and skipped;
      the batch is still marked processed.
    - A RepositoryError aborts the cycle before anything is marked, so the
      next invocation retries the same window.
    - An invocation that overlaps a running cycle is skipped.

Example:
    >>> engine = create_detection_engine(repository, materializer, config.detection)
    >>> result = await engine.run_detection_cycle()
    >>> result.alerts_touched
    1
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog

from siem_engine.config.models import DetectionConfig
from siem_engine.detection.materializer import AlertMaterializer
from siem_engine.detection.rules import (
    DetectionRule,
    RuleEvaluationError,
    build_detection_rules,
    evaluate_rule,
)
from siem_engine.interfaces.repository import (
    EventFilter,
    EventRepository,
    RepositoryError,
)
from siem_engine.models.alerts import AlertCandidate
from siem_engine.models.cycles import CycleResult
from siem_engine.models.events import LogEvent
from siem_engine.stats.windows import utc_now, window_start

logger = structlog.get_logger(__name__)


DEFAULT_DETECTION_WINDOW = timedelta(minutes=5)


class DetectionEngine:
    """
    Runs detection cycles over unprocessed events.

    Attributes:
        repository: Event and alert store.
        materializer: Merge-or-create write path for candidates.
        rules: Ordered detection rules.
        window: Default batch window.
        last_cycle_at: Reference time of the last completed cycle.
        _cycle_lock: Guards against overlapping cycles.

    Example:
        >>> engine = DetectionEngine(
        ...     repository=repository,
        ...     materializer=materializer,
        ...     rules=build_detection_rules(DetectionConfig()),
        ... )
        >>> engine.set_rule_enabled("anomaly", False)
    """

    def __init__(
        self,
        repository: EventRepository,
        materializer: AlertMaterializer,
        rules: Sequence[DetectionRule],
        window: timedelta = DEFAULT_DETECTION_WINDOW,
    ) -> None:
        self.repository = repository
        self.materializer = materializer
        self.rules: List[DetectionRule] = list(rules)
        self.window = window
        self.last_cycle_at: Optional[datetime] = None
        self._cycle_lock = asyncio.Lock()

        logger.info(
            "detection_engine_initialized",
            rules=[rule.name for rule in self.rules],
            window_seconds=window.total_seconds(),
        )

    @property
    def is_running(self) -> bool:
        """Check if a cycle is in progress."""
        return self._cycle_lock.locked()

    def get_rule(self, name: str) -> DetectionRule:
        """
        Get a rule by name.

        Raises:
            KeyError: If no rule has that name.
        """
        for rule in self.rules:
            if rule.name == name:
                return rule
        raise KeyError(f"Unknown detection rule: {name}")

    def set_rule_enabled(self, name: str, enabled: bool) -> None:
        """
        Enable or disable a rule in place.

        Args:
            name: Rule name.
            enabled: New state; takes effect from the next cycle.

        Raises:
            KeyError: If no rule has that name.
        """
        rule = self.get_rule(name)
        rule.enabled = enabled
        logger.info("detection_rule_toggled", rule=name, enabled=enabled)

    async def run_detection_cycle(
        self,
        window: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> CycleResult:
        """
        Run one detection cycle.

        Args:
            window: Batch window (defaults to the configured window).
            now: Cycle reference time (defaults to now).

        Returns:
            CycleResult: Cycle counters; skipped=True if a cycle was running.

        Raises:
            RepositoryError: If the repository fails; nothing is marked processed.
        """
        if now is None:
            now = utc_now()

        if self._cycle_lock.locked():
            logger.warning("detection_cycle_skipped", reason="already_running")
            return CycleResult(cycle="detection", started_at=now, skipped=True)

        async with self._cycle_lock:
            return await self._run_cycle(window or self.window, now)

    async def _run_cycle(self, window: timedelta, now: datetime) -> CycleResult:
        since = window_start(now, window)

        try:
            events = await self.repository.query_events(since, EventFilter(processed=False))
        except RepositoryError as e:
            logger.error("detection_cycle_failed", stage="fetch", error=str(e))
            raise

        candidates, rule_errors = self._evaluate_rules(events, now)

        alert_ids: List[str] = []
        dropped = 0
        try:
            for candidate in candidates:
                alert = await self.materializer.materialize(candidate, now)
                if alert is None:
                    dropped += 1
                elif alert.alert_id not in alert_ids:
                    alert_ids.append(alert.alert_id)

            marked = await self.repository.mark_processed([event.id for event in events])
        except RepositoryError as e:
            logger.error(
                "detection_cycle_failed",
                stage="write",
                events=len(events),
                candidates=len(candidates),
                error=str(e),
            )
            raise

        self.last_cycle_at = now
        result = CycleResult(
            cycle="detection",
            started_at=now,
            events_fetched=len(events),
            candidates=len(candidates),
            alert_ids=alert_ids,
            dropped=dropped,
            events_marked=marked,
            rule_errors=rule_errors,
        )
        logger.info(
            "detection_cycle_completed",
            events=result.events_fetched,
            candidates=result.candidates,
            alerts=result.alerts_touched,
            dropped=dropped,
            rule_errors=rule_errors,
        )
        return result

    def _evaluate_rules(
        self,
        events: Sequence[LogEvent],
        now: datetime,
    ) -> tuple[List[AlertCandidate], List[str]]:
        candidates: List[AlertCandidate] = []
        rule_errors: List[str] = []
        if not events:
            return candidates, rule_errors

        for rule in self.rules:
            if not rule.enabled:
                continue
            try:
                found = evaluate_rule(rule, events, now)
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
                logger.info("rule_fired", rule=rule.name, candidates=len(found))
            candidates.extend(found)
        return candidates, rule_errors

    def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Drop expired per-rule state.

        Returns:
            int: Entries removed across rules.
        """
        if now is None:
            now = utc_now()
        return sum(rule.sweep(now) for rule in self.rules)

    def status(self) -> Dict[str, Any]:
        """
        Report engine status.

        Returns:
            Dict with rule states, window, running flag and last cycle time.
        """
        return {
            "running": self.is_running,
            "window_seconds": self.window.total_seconds(),
            "rules": [rule.describe() for rule in self.rules],
            "enabled_rules": sum(1 for rule in self.rules if rule.enabled),
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


def create_detection_engine(
    repository: EventRepository,
    materializer: AlertMaterializer,
    config: Optional[DetectionConfig] = None,
) -> DetectionEngine:
    """
    Factory function to create a DetectionEngine from configuration.

    Args:
        repository: Event and alert store.
        materializer: Shared merge-or-create write path.
        config: Detection configuration (defaults if omitted).

    Returns:
        DetectionEngine: Engine with the full rule set.
    """
    if config is None:
        config = DetectionConfig()
    return DetectionEngine(
        repository=repository,
        materializer=materializer,
        rules=build_detection_rules(config),
        window=config.window,
    )
