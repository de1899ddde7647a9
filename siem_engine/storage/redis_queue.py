"""
Redis list notification queue.

Each intent is RPUSHed as JSON to `{prefix}:{notification_queue}`; a
delivery worker outside this package pops and delivers them.

Example:
    >>> queue = RedisNotificationQueue(connection)
    >>> await queue.enqueue(alert.alert_id, ["email", "webhook"], "escalation:critical")
    >>> await queue.length()
    1
"""

from typing import Iterable, List

import structlog
from redis.exceptions import RedisError

from siem_engine.detection.notifications import NotificationIntent
from siem_engine.interfaces.notifier import NotificationDispatcher, NotificationEnqueueError
from siem_engine.storage.redis_connection import RedisConnection, RedisConnectionException

logger = structlog.get_logger(__name__)


class RedisNotificationQueue(NotificationDispatcher):
    """
    NotificationDispatcher that appends intents to a Redis list.

    Attributes:
        connection: Shared connection.
        queue_key: Full list key.
    """

    def __init__(self, connection: RedisConnection) -> None:
        self.connection = connection
        self.queue_key = connection.key(connection.config.notification_queue)

    async def enqueue(self, alert_id: str, channels: Iterable[str], reason: str) -> None:
        intent = NotificationIntent.build(alert_id, channels, reason)
        try:
            client = self.connection.require()
            await client.rpush(self.queue_key, intent.model_dump_json())
        except (RedisError, RedisConnectionException) as e:
            logger.error(
                "notification_queue_push_failed",
                alert_id=alert_id,
                queue=self.queue_key,
                error=str(e),
            )
            raise NotificationEnqueueError(
                f"Failed to enqueue notification for {alert_id}: {e}"
            ) from e

        logger.debug(
            "notification_queued",
            alert_id=alert_id,
            channels=intent.channels,
            reason=reason,
            queue=self.queue_key,
        )

    async def length(self) -> int:
        """Number of intents waiting in the queue."""
        client = self.connection.require()
        return await client.llen(self.queue_key)

    async def peek(self, count: int = 10) -> List[NotificationIntent]:
        """Read up to count intents from the head without removing them."""
        client = self.connection.require()
        raw = await client.lrange(self.queue_key, 0, count - 1)
        return [NotificationIntent.model_validate_json(item) for item in raw]
