"""
Redis-backed event repository.

Key Patterns (under the configured prefix):
    - Events: `event:{id}` (JSON string), `events:by_time` (zset, epoch ms)
    - Alerts: `alert:{id}` (JSON string), `alerts:by_time` (zset, created ms)
    - Create guard: `alerts:open:{dedup_key}` (alert id, with TTL)

Concurrency:
    update_alert WATCHes the alert key and compares the stored version
    inside the transaction, so a concurrent writer surfaces as
    AlertVersionConflict. create_alert claims the dedup key with SET NX;
    if another process already holds it for an open alert inside the dedup
    window, the create is rejected with AlertVersionConflict and the caller
    re-reads and merges. Holders that are closed or older than the window
    are taken over.

Example:
    >>> repository = RedisEventRepository(connection)
    >>> await repository.add_events(events)
    >>> alerts = await repository.query_alerts(AlertFilter(statuses=OPEN_STATUSES))
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

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
from siem_engine.stats.windows import epoch_millis
from siem_engine.storage.redis_connection import RedisConnection

logger = structlog.get_logger(__name__)


# risk_score is derived; it is recomputed on load
ALERT_DUMP_EXCLUDE = {"risk_score"}


def dump_alert(alert: Alert) -> str:
    """Serialize an alert for storage."""
    return alert.model_dump_json(exclude=ALERT_DUMP_EXCLUDE)


def load_alert(data: Union[str, bytes]) -> Alert:
    """
    Deserialize a stored alert.

    Raises:
        RepositoryError: If the stored payload is invalid.
    """
    try:
        return Alert.model_validate_json(data)
    except ValidationError as e:
        raise RepositoryError(f"Corrupt alert payload: {e}") from e


def load_event(data: Union[str, bytes]) -> LogEvent:
    """
    Deserialize a stored event.

    Raises:
        RepositoryError: If the stored payload is invalid.
    """
    try:
        return LogEvent.model_validate_json(data)
    except ValidationError as e:
        raise RepositoryError(f"Corrupt event payload: {e}") from e


class RedisEventRepository(EventRepository):
    """
    EventRepository over redis.asyncio.

    Attributes:
        connection: Shared connection.
        guard_ttl: Lifetime of the create guard in seconds.
    """

    KEY_EVENT = "event"
    KEY_EVENTS_BY_TIME = "events:by_time"
    KEY_ALERT = "alert"
    KEY_ALERTS_BY_TIME = "alerts:by_time"
    KEY_ALERTS_OPEN = "alerts:open"

    def __init__(self, connection: RedisConnection) -> None:
        self.connection = connection
        self.guard_ttl = connection.config.create_guard_ttl_seconds

    def _event_key(self, event_id: str) -> str:
        return self.connection.key(self.KEY_EVENT, event_id)

    def _alert_key(self, alert_id: str) -> str:
        return self.connection.key(self.KEY_ALERT, alert_id)

    def _guard_key(self, dedup_key: str) -> str:
        return self.connection.key(self.KEY_ALERTS_OPEN, dedup_key)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def add_events(self, events: Sequence[LogEvent]) -> int:
        """
        Store events (the ingestion side, outside the engines).

        Returns:
            int: Number of events stored.

        Raises:
            RepositoryError: If the write fails.
        """
        client = self.connection.require()
        by_time = self.connection.key(self.KEY_EVENTS_BY_TIME)

        try:
            async with client.pipeline(transaction=True) as pipe:
                for event in events:
                    pipe.set(self._event_key(event.id), event.model_dump_json())
                    pipe.zadd(by_time, {event.id: epoch_millis(event.timestamp)})
                await pipe.execute()
        except RedisError as e:
            logger.error("events_store_failed", count=len(events), error=str(e))
            raise RepositoryError(f"Failed to store {len(events)} events: {e}") from e

        logger.debug("events_added", count=len(events))
        return len(events)

    async def query_events(
        self,
        since: datetime,
        event_filter: Optional[EventFilter] = None,
    ) -> List[LogEvent]:
        client = self.connection.require()
        upper = (
            f"({epoch_millis(event_filter.until)}"
            if event_filter is not None and event_filter.until is not None
            else "+inf"
        )

        try:
            ids = await client.zrangebyscore(
                self.connection.key(self.KEY_EVENTS_BY_TIME),
                epoch_millis(since),
                upper,
            )
            payloads = await client.mget([self._event_key(i) for i in ids]) if ids else []
        except RedisError as e:
            logger.error("events_query_failed", since=since.isoformat(), error=str(e))
            raise RepositoryError(f"Failed to query events: {e}") from e

        events = [load_event(payload) for payload in payloads if payload is not None]
        if event_filter is not None:
            events = [event for event in events if event_filter.matches(event)]
        return sorted(events, key=lambda e: e.timestamp)

    async def mark_processed(self, event_ids: Iterable[str]) -> int:
        client = self.connection.require()
        ids = list(event_ids)
        if not ids:
            return 0

        try:
            payloads = await client.mget([self._event_key(i) for i in ids])
            pending = [
                event
                for event in (load_event(p) for p in payloads if p is not None)
                if not event.processed
            ]
            if pending:
                async with client.pipeline(transaction=True) as pipe:
                    for event in pending:
                        pipe.set(self._event_key(event.id), event.mark_processed().model_dump_json())
                    await pipe.execute()
        except RedisError as e:
            logger.error("events_mark_failed", count=len(ids), error=str(e))
            raise RepositoryError(f"Failed to mark {len(ids)} events processed: {e}") from e

        return len(pending)

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def query_alerts(self, alert_filter: AlertFilter) -> List[Alert]:
        client = self.connection.require()
        lower = (
            epoch_millis(alert_filter.created_after)
            if alert_filter.created_after is not None
            else "-inf"
        )
        upper = (
            epoch_millis(alert_filter.created_before)
            if alert_filter.created_before is not None
            else "+inf"
        )

        try:
            ids = await client.zrangebyscore(
                self.connection.key(self.KEY_ALERTS_BY_TIME),
                lower,
                upper,
            )
            payloads = await client.mget([self._alert_key(i) for i in ids]) if ids else []
        except RedisError as e:
            logger.error("alerts_query_failed", error=str(e))
            raise RepositoryError(f"Failed to query alerts: {e}") from e

        alerts = [load_alert(payload) for payload in payloads if payload is not None]
        matched = [alert for alert in alerts if alert_filter.matches(alert)]
        return sorted(matched, key=lambda a: a.created_at)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        client = self.connection.require()
        try:
            data = await client.get(self._alert_key(alert_id))
        except RedisError as e:
            logger.error("alert_retrieve_failed", alert_id=alert_id, error=str(e))
            raise RepositoryError(f"Failed to retrieve alert {alert_id}: {e}") from e

        if data is None:
            return None
        return load_alert(data)

    async def create_alert(self, alert: Alert, dedup_since: Optional[datetime] = None) -> str:
        client = self.connection.require()
        guard_key = self._guard_key(alert.dedup_key)
        stored = alert.model_copy(update={"version": 1})

        try:
            claimed = await client.set(guard_key, alert.alert_id, nx=True, ex=self.guard_ttl)
            if not claimed:
                holder_id = await client.get(guard_key)
                holder = await self.get_alert(holder_id) if holder_id else None
                if self._holder_blocks(holder, alert, dedup_since):
                    logger.info(
                        "alert_create_guarded",
                        dedup_key=alert.dedup_key,
                        holder_id=holder.alert_id,
                    )
                    raise AlertVersionConflict(holder.alert_id, 0, holder.version)

            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._alert_key(alert.alert_id), dump_alert(stored))
                pipe.zadd(
                    self.connection.key(self.KEY_ALERTS_BY_TIME),
                    {alert.alert_id: epoch_millis(alert.created_at)},
                )
                pipe.set(guard_key, alert.alert_id, ex=self.guard_ttl)
                await pipe.execute()

        except RedisError as e:
            logger.error("alert_create_failed", alert_id=alert.alert_id, error=str(e))
            raise RepositoryError(f"Failed to create alert {alert.alert_id}: {e}") from e

        return alert.alert_id

    @staticmethod
    def _holder_blocks(
        holder: Optional[Alert],
        alert: Alert,
        dedup_since: Optional[datetime],
    ) -> bool:
        """Check if the guard holder is an open alert still inside the dedup window."""
        if holder is None or not holder.is_open or holder.alert_id == alert.alert_id:
            return False
        if dedup_since is not None and holder.created_at < dedup_since:
            return False
        return True

    async def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        client = self.connection.require()
        key = self._alert_key(alert.alert_id)
        guard_key = self._guard_key(alert.dedup_key)
        stored = alert.model_copy(update={"version": expected_version + 1})

        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key, guard_key)
                data = await pipe.get(key)
                if data is None:
                    raise AlertNotFoundError(alert.alert_id)

                current = load_alert(data)
                if current.version != expected_version:
                    raise AlertVersionConflict(alert.alert_id, expected_version, current.version)
                guard_holder = await pipe.get(guard_key)

                pipe.multi()
                pipe.set(key, dump_alert(stored))
                if not stored.is_open and guard_holder == alert.alert_id:
                    pipe.delete(guard_key)
                await pipe.execute()

        except WatchError as e:
            logger.info("alert_update_raced", alert_id=alert.alert_id)
            raise AlertVersionConflict(alert.alert_id, expected_version, None) from e
        except RedisError as e:
            logger.error("alert_update_failed", alert_id=alert.alert_id, error=str(e))
            raise RepositoryError(f"Failed to update alert {alert.alert_id}: {e}") from e

        return stored
