"""
Reference notification dispatchers.

This module provides in-process NotificationDispatcher implementations:

- LogNotificationDispatcher writes each intent to the structured log
  (the console channel) and keeps a bounded history of recent intents.
- CompositeNotificationDispatcher fans an intent out to several
  dispatchers, e.g. the log plus a Redis queue.

Example:
    >>> dispatcher = CompositeNotificationDispatcher(
    ...     [LogNotificationDispatcher(), RedisNotificationQueue(redis_config)]
    ... )
    >>> await dispatcher.enqueue(alert.alert_id, ["email"], "escalation:critical")
"""

from collections import deque
from datetime import datetime
from typing import Deque, Iterable, List, Sequence

import structlog
from pydantic import BaseModel, Field

from siem_engine.interfaces.notifier import NotificationDispatcher, NotificationEnqueueError
from siem_engine.stats.windows import utc_now

logger = structlog.get_logger(__name__)


DEFAULT_HISTORY_SIZE = 1000


class NotificationIntent(BaseModel):
    """
    A queued request to notify channels about an alert.

    Attributes:
        alert_id: Alert to notify about.
        channels: Target channels, sorted.
        reason: Why the intent exists.
        queued_at: When the intent was enqueued.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    alert_id: str = Field(..., description="Alert id")
    channels: List[str] = Field(..., description="Target channels", min_length=1)
    reason: str = Field(..., description="Intent reason")
    queued_at: datetime = Field(default_factory=utc_now, description="Enqueue time")

    @classmethod
    def build(cls, alert_id: str, channels: Iterable[str], reason: str) -> "NotificationIntent":
        """Build an intent with de-duplicated, sorted channels."""
        return cls(alert_id=alert_id, channels=sorted(set(channels)), reason=reason)


class LogNotificationDispatcher(NotificationDispatcher):
    """
    Dispatcher that logs intents instead of delivering them.

    Attributes:
        history: Most recent intents, oldest first.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self.history: Deque[NotificationIntent] = deque(maxlen=history_size)

    async def enqueue(self, alert_id: str, channels: Iterable[str], reason: str) -> None:
        intent = NotificationIntent.build(alert_id, channels, reason)
        self.history.append(intent)
        logger.warning(
            "notification_intent",
            alert_id=intent.alert_id,
            channels=intent.channels,
            reason=intent.reason,
        )


class CompositeNotificationDispatcher(NotificationDispatcher):
    """
    Fans each intent out to several dispatchers.

    Every dispatcher is attempted; if any of them fails, a single
    NotificationEnqueueError naming the failures is raised afterwards.
    """

    def __init__(self, dispatchers: Sequence[NotificationDispatcher]) -> None:
        if not dispatchers:
            raise ValueError("CompositeNotificationDispatcher needs at least one dispatcher")
        self.dispatchers = list(dispatchers)

        logger.info(
            "composite_dispatcher_initialized",
            dispatchers=[type(d).__name__ for d in self.dispatchers],
        )

    async def enqueue(self, alert_id: str, channels: Iterable[str], reason: str) -> None:
        channel_list = list(channels)
        failures: List[str] = []

        for dispatcher in self.dispatchers:
            try:
                await dispatcher.enqueue(alert_id, channel_list, reason)
            except Exception as e:
                name = type(dispatcher).__name__
                logger.error(
                    "dispatcher_enqueue_failed",
                    dispatcher=name,
                    alert_id=alert_id,
                    error=str(e),
                )
                failures.append(f"{name}: {e}")

        if failures:
            raise NotificationEnqueueError("; ".join(failures))
