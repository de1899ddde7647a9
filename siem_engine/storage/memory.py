"""
In-memory event repository.

Reference EventRepository for tests and embedding. All state lives in
dicts guarded by one asyncio.Lock; alert writes go through the same
version check as the Redis repository.

Example:
    >>> repository = InMemoryEventRepository()
    >>> await repository.add_events(events)
    >>> unprocessed = await repository.query_events(since, EventFilter(processed=False))
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog

from siem_engine.interfaces.repository import (
    AlertFilter,
    AlertNotFoundError,
    AlertVersionConflict,
    EventFilter,
    EventRepository,
    RepositoryError,
)
from siem_engine.models.alerts import Alert
from siem_engine.models.events import LogEvent

logger = structlog.get_logger(__name__)


class InMemoryEventRepository(EventRepository):
    """
    Dict-backed EventRepository.

    Attributes:
        _events: Event id to event.
        _alerts: Alert id to stored alert.
        _lock: Serializes every read and write.
    """

    def __init__(self) -> None:
        self._events: Dict[str, LogEvent] = {}
        self._alerts: Dict[str, Alert] = {}
        self._lock = asyncio.Lock()

    async def add_events(self, events: Iterable[LogEvent]) -> int:
        """
        Store events (the ingestion side, outside the engines).

        Returns:
            int: Number of events stored.
        """
        async with self._lock:
            count = 0
            for event in events:
                self._events[event.id] = event
                count += 1
        logger.debug("events_added", count=count, total=len(self._events))
        return count

    async def query_events(
        self,
        since: datetime,
        event_filter: Optional[EventFilter] = None,
    ) -> List[LogEvent]:
        async with self._lock:
            matched = [
                event
                for event in self._events.values()
                if event.timestamp >= since
                and (event_filter is None or event_filter.matches(event))
            ]
        return sorted(matched, key=lambda e: e.timestamp)

    async def mark_processed(self, event_ids: Iterable[str]) -> int:
        marked = 0
        async with self._lock:
            for event_id in event_ids:
                event = self._events.get(event_id)
                if event is None or event.processed:
                    continue
                self._events[event_id] = event.mark_processed()
                marked += 1
        return marked

    async def query_alerts(self, alert_filter: AlertFilter) -> List[Alert]:
        async with self._lock:
            matched = [alert for alert in self._alerts.values() if alert_filter.matches(alert)]
        return sorted(matched, key=lambda a: a.created_at)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._lock:
            return self._alerts.get(alert_id)

    async def create_alert(self, alert: Alert, dedup_since: Optional[datetime] = None) -> str:
        async with self._lock:
            if alert.alert_id in self._alerts:
                raise RepositoryError(f"Alert already exists: {alert.alert_id}")
            self._alerts[alert.alert_id] = alert.model_copy(update={"version": 1})
        return alert.alert_id

    async def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        async with self._lock:
            current = self._alerts.get(alert.alert_id)
            if current is None:
                raise AlertNotFoundError(alert.alert_id)
            if current.version != expected_version:
                raise AlertVersionConflict(alert.alert_id, expected_version, current.version)
            stored = alert.model_copy(update={"version": expected_version + 1})
            self._alerts[alert.alert_id] = stored
        return stored

    @property
    def event_count(self) -> int:
        """Number of stored events."""
        return len(self._events)

    @property
    def alert_count(self) -> int:
        """Number of stored alerts."""
        return len(self._alerts)
