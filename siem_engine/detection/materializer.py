"""
Alert materializer: merge-or-create for rule candidates.

This module provides the AlertMaterializer, the single write path through
which detection and correlation candidates become persisted Alerts.

Key Features:
    - Deduplication: a candidate merges into the open alert with the same
      dedup key instead of creating a second one
    - Per-key asyncio locks serialize racers inside one process
    - Versioned writes (AlertVersionConflict) catch racers across processes;
      a conflict is retried once with a fresh read, then dropped
    - Immediate notification intents for high/critical alerts

Example:
    >>> materializer = AlertMaterializer(repository, dispatcher)
    >>> alert = await materializer.materialize(candidate)
    >>> alert.status
    <AlertStatus.ACTIVE: 'active'>
"""

import asyncio
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, Sequence

import structlog

from siem_engine.interfaces.notifier import NotificationDispatcher
from siem_engine.interfaces.repository import (
    AlertFilter,
    AlertVersionConflict,
    EventRepository,
)
from siem_engine.models.alerts import OPEN_STATUSES, Alert, AlertCandidate
from siem_engine.stats.windows import DEFAULT_MAX_KEYS, utc_now, window_start

logger = structlog.get_logger(__name__)


# Write attempts per candidate: first try plus one retry with a fresh read
MAX_WRITE_ATTEMPTS = 2

DEFAULT_IMMEDIATE_CHANNELS = ("dashboard",)

IMMEDIATE_REASON = "immediate"


def dedup_window_start(candidate: AlertCandidate, now: datetime) -> Optional[datetime]:
    """
    Oldest creation time an open alert may have and still absorb a candidate.

    Correlations dedup on their id alone and have no lower bound.
    """
    if candidate.is_correlation:
        return None
    return window_start(now, candidate.window)


class AlertMaterializer:
    """
    Converts candidates into persisted alerts, merging duplicates.

    Attributes:
        repository: Alert store.
        dispatcher: Notification intent sink.
        immediate_channels: Channels enqueued for new high/critical alerts.
        max_locks: Bound on retained per-key locks.
        _locks: Dedup key to lock, least recently used first.

    Example:
        >>> materializer = AlertMaterializer(
        ...     repository=repository,
        ...     dispatcher=dispatcher,
        ...     immediate_channels=["dashboard"],
        ... )
        >>> alerts = await materializer.materialize_all(candidates)
    """

    def __init__(
        self,
        repository: EventRepository,
        dispatcher: NotificationDispatcher,
        immediate_channels: Sequence[str] = DEFAULT_IMMEDIATE_CHANNELS,
        max_locks: int = DEFAULT_MAX_KEYS,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.immediate_channels = list(immediate_channels)
        self.max_locks = max_locks
        self._locks: "OrderedDict[str, asyncio.Lock]" = OrderedDict()

        logger.info(
            "alert_materializer_initialized",
            immediate_channels=self.immediate_channels,
            max_locks=max_locks,
        )

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            if len(self._locks) >= self.max_locks:
                self._evict_idle(len(self._locks) - self.max_locks + 1)
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._locks.move_to_end(key)
        return lock

    def _evict_idle(self, limit: Optional[int] = None) -> int:
        removed = 0
        for key in list(self._locks.keys()):
            if limit is not None and removed >= limit:
                break
            if not self._locks[key].locked():
                del self._locks[key]
                removed += 1
        return removed

    def sweep(self) -> int:
        """
        Drop every idle per-key lock.

        Locks currently held are kept.

        Returns:
            int: Number of locks removed.
        """
        removed = self._evict_idle()
        if removed:
            logger.debug("materializer_locks_swept", removed=removed, remaining=len(self._locks))
        return removed

    @property
    def lock_count(self) -> int:
        """Number of retained per-key locks."""
        return len(self._locks)

    async def find_open_match(
        self,
        candidate: AlertCandidate,
        now: datetime,
    ) -> Optional[Alert]:
        """
        Find the open alert a candidate should merge into.

        Correlations match on exact correlation id. Detections match on
        type and source IP among alerts created within the rule window.

        Args:
            candidate: The candidate.
            now: Reference time.

        Returns:
            Optional[Alert]: Most recent matching open alert, or None.

        Raises:
            RepositoryError: If the repository cannot be read.
        """
        alert_filter = AlertFilter(
            statuses=OPEN_STATUSES,
            correlation_id=candidate.correlation_id,
            alert_type=None if candidate.is_correlation else candidate.alert_type,
            source_ip=None if candidate.is_correlation else candidate.source_ip,
            created_after=dedup_window_start(candidate, now),
        )

        matches = [
            alert
            for alert in await self.repository.query_alerts(alert_filter)
            if alert.dedup_key == candidate.dedup_key
        ]
        if not matches:
            return None
        return max(matches, key=lambda a: a.created_at)

    async def _merge_or_create(self, candidate: AlertCandidate, now: datetime) -> Alert:
        existing = await self.find_open_match(candidate, now)

        if existing is not None:
            merged = existing.merge(candidate, timestamp=now)
            stored = await self.repository.update_alert(merged, expected_version=existing.version)
            logger.info(
                "alert_merged",
                alert_id=stored.alert_id,
                dedup_key=candidate.dedup_key,
                confidence=stored.confidence,
                related_logs=len(stored.related_log_ids),
            )
            return stored

        alert = Alert.from_candidate(candidate, timestamp=now).model_copy(update={"version": 1})
        await self.repository.create_alert(alert, dedup_since=dedup_window_start(candidate, now))
        logger.info(
            "alert_created",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            source_ip=alert.source_ip,
            correlation_id=alert.correlation_id,
            confidence=alert.confidence,
            risk_score=alert.risk_score,
        )
        return alert

    async def _notify_immediately(self, alert: Alert, now: datetime) -> Alert:
        if not alert.severity.notifies_immediately:
            return alert
        if alert.has_notified(self.immediate_channels):
            return alert

        try:
            await self.dispatcher.enqueue(alert.alert_id, self.immediate_channels, IMMEDIATE_REASON)
        except Exception as e:
            logger.error(
                "notification_enqueue_failed",
                alert_id=alert.alert_id,
                channels=self.immediate_channels,
                reason=IMMEDIATE_REASON,
                error=str(e),
            )
            return alert

        recorded = alert.record_notification(self.immediate_channels, IMMEDIATE_REASON, timestamp=now)
        try:
            return await self.repository.update_alert(recorded, expected_version=alert.version)
        except AlertVersionConflict as e:
            logger.warning(
                "notification_record_conflict",
                alert_id=alert.alert_id,
                error=str(e),
            )
            return alert

    async def materialize(
        self,
        candidate: AlertCandidate,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """
        Persist a candidate, merging into an existing open alert if one matches.

        Args:
            candidate: Rule output.
            now: Reference time (defaults to now).

        Returns:
            Optional[Alert]: The created or merged alert, or None if the
                write was dropped after a repeated version conflict.

        Raises:
            RepositoryError: If the repository fails for another reason.
        """
        if now is None:
            now = utc_now()

        async with self._lock_for(candidate.dedup_key):
            for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
                try:
                    alert = await self._merge_or_create(candidate, now)
                except AlertVersionConflict as e:
                    if attempt == MAX_WRITE_ATTEMPTS:
                        logger.warning(
                            "alert_merge_dropped",
                            dedup_key=candidate.dedup_key,
                            rule=candidate.rule_name,
                            error=str(e),
                        )
                        return None
                    logger.info(
                        "alert_merge_conflict_retrying",
                        dedup_key=candidate.dedup_key,
                        attempt=attempt,
                    )
                    continue
                return await self._notify_immediately(alert, now)
        return None

    async def materialize_all(
        self,
        candidates: Sequence[AlertCandidate],
        now: Optional[datetime] = None,
    ) -> List[Optional[Alert]]:
        """
        Materialize candidates one after another.

        Args:
            candidates: Rule outputs in evaluation order.
            now: Reference time (defaults to now).

        Returns:
            List of results aligned with candidates (None for dropped ones).
        """
        return [await self.materialize(candidate, now) for candidate in candidates]
