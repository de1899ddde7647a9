"""
Abstract base class for the event and alert repository.

This module defines the EventRepository interface through which the
engines read LogEvents and read/write Alerts. The engines never touch a
store directly; the persistent schema and indexing live behind this
contract.

The repository is responsible for:
- Time-range queries over events, optionally filtered
- Flipping the processed flag on consumed events
- Alert queries by status, type, IP, correlation id and age
- Versioned alert writes (optimistic concurrency)

Example:
    >>> class PostgresRepository(EventRepository):
    ...     async def query_events(self, since, event_filter=None):
    ...         rows = await self._pool.fetch(QUERY, since)
    ...         return [LogEvent(**row) for row in rows]
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field

from siem_engine.models.alerts import Alert, AlertSeverity, AlertStatus, AlertType
from siem_engine.models.events import EventCategory, LogEvent


class RepositoryError(Exception):
    """Base exception for repository failures (fetch or write)."""

    pass


class AlertNotFoundError(RepositoryError):
    """Raised when an alert id does not exist."""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


class AlertVersionConflict(RepositoryError):
    """
    Raised when an alert write loses an optimistic concurrency race.

    Attributes:
        alert_id: The alert that was written.
        expected_version: Version the writer read.
        actual_version: Version found in the store.
    """

    def __init__(self, alert_id: str, expected_version: int, actual_version: Optional[int]):
        self.alert_id = alert_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Alert {alert_id} version conflict: "
            f"expected {expected_version}, found {actual_version}"
        )


class EventFilter(BaseModel):
    """
    Predicate for event queries.

    Attributes:
        processed: Match only this processed state (None matches both).
        until: Exclusive upper time bound.
        categories: Match only these categories.
        source_ip: Match only this source IP.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    processed: Optional[bool] = Field(default=None, description="Processed state")
    until: Optional[datetime] = Field(default=None, description="Exclusive upper bound")
    categories: Optional[FrozenSet[EventCategory]] = Field(
        default=None,
        description="Allowed categories",
    )
    source_ip: Optional[str] = Field(default=None, description="Source IP")

    def matches(self, event: LogEvent) -> bool:
        """Check if an event satisfies the predicate."""
        if self.processed is not None and event.processed != self.processed:
            return False
        if self.until is not None and event.timestamp >= self.until:
            return False
        if self.categories is not None and event.category not in self.categories:
            return False
        if self.source_ip is not None and event.source_ip != self.source_ip:
            return False
        return True


class AlertFilter(BaseModel):
    """
    Predicate for alert queries.

    Attributes:
        statuses: Allowed statuses (None matches all).
        alert_type: Alert type.
        source_ip: Source IP.
        correlation_id: Exact correlation id.
        severity: Severity.
        created_after: Inclusive lower bound on created_at.
        created_before: Inclusive upper bound on created_at.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    statuses: Optional[FrozenSet[AlertStatus]] = Field(default=None)
    alert_type: Optional[AlertType] = Field(default=None)
    source_ip: Optional[str] = Field(default=None)
    correlation_id: Optional[str] = Field(default=None)
    severity: Optional[AlertSeverity] = Field(default=None)
    created_after: Optional[datetime] = Field(default=None)
    created_before: Optional[datetime] = Field(default=None)

    def matches(self, alert: Alert) -> bool:
        """Check if an alert satisfies the predicate."""
        if self.statuses is not None and alert.status not in self.statuses:
            return False
        if self.alert_type is not None and alert.alert_type != self.alert_type:
            return False
        if self.source_ip is not None and alert.source_ip != self.source_ip:
            return False
        if self.correlation_id is not None and alert.correlation_id != self.correlation_id:
            return False
        if self.severity is not None and alert.severity != self.severity:
            return False
        if self.created_after is not None and alert.created_at < self.created_after:
            return False
        if self.created_before is not None and alert.created_at > self.created_before:
            return False
        return True


class EventRepository(ABC):
    """
    Abstract store of LogEvents and Alerts.

    Implementations raise RepositoryError (or a subclass) for any failure
    so the engines can abort a cycle cleanly.
    """

    @abstractmethod
    async def query_events(
        self,
        since: datetime,
        event_filter: Optional[EventFilter] = None,
    ) -> List[LogEvent]:
        """
        Fetch events with timestamp >= since, oldest first.

        Args:
            since: Inclusive lower time bound.
            event_filter: Optional extra predicate.

        Returns:
            List[LogEvent]: Matching events ordered by timestamp.

        Raises:
            RepositoryError: If the store cannot be read.
        """
        pass

    @abstractmethod
    async def mark_processed(self, event_ids: Iterable[str]) -> int:
        """
        Flip the processed flag on events.

        Args:
            event_ids: Ids to mark. Unknown ids are ignored.

        Returns:
            int: Number of events newly marked.

        Raises:
            RepositoryError: If the store cannot be written.
        """
        pass

    @abstractmethod
    async def query_alerts(self, alert_filter: AlertFilter) -> List[Alert]:
        """
        Fetch alerts matching a filter, oldest first.

        Raises:
            RepositoryError: If the store cannot be read.
        """
        pass

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        """
        Fetch one alert by id.

        Returns:
            Optional[Alert]: The alert, or None if unknown.

        Raises:
            RepositoryError: If the store cannot be read.
        """
        pass

    @abstractmethod
    async def create_alert(self, alert: Alert, dedup_since: Optional[datetime] = None) -> str:
        """
        Persist a new alert.

        The stored alert starts at version 1.

        Args:
            alert: The new alert.
            dedup_since: Start of the dedup window. An open alert with the same
                dedup key created before it no longer blocks the create.

        Returns:
            str: The alert id.

        Raises:
            RepositoryError: If the store cannot be written.
        """
        pass

    @abstractmethod
    async def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        """
        Replace a stored alert if its version is still expected_version.

        Args:
            alert: The updated alert.
            expected_version: Version read before mutating.

        Returns:
            Alert: The stored alert with its new version.

        Raises:
            AlertVersionConflict: If another writer got there first.
            AlertNotFoundError: If the alert does not exist.
            RepositoryError: If the store cannot be written.
        """
        pass
